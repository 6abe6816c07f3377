from .roast import DISCLAIMER, generate_roast, process_movie, refresh_streaming_providers
from .truth import get_or_create_truth

__all__ = [
    "DISCLAIMER",
    "generate_roast",
    "get_or_create_truth",
    "process_movie",
    "refresh_streaming_providers",
]
