from src.models.base import Base
from src.models.listing import Listing, SubmissionState, VettingState, VettingSubmission

__all__ = [
    "Base",
    "Listing",
    "VettingSubmission",
    "VettingState",
    "SubmissionState",
]
