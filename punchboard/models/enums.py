from enum import Enum


class FeedDocumentKind(str, Enum):
    """Root element names of the two feed document shapes."""

    SNAPSHOT = "MOPComplete"
    DIFF = "MOPDiff"


class CycleOutcome(str, Enum):
    MERGED = "MERGED"  # Document validated and merged
    NO_OP = "NO_OP"  # Payload identical to the previous one
    RESET = "RESET"  # Fetch, parse or validation failed; roster cleared
    SKIPPED = "SKIPPED"  # Another cycle was still in flight
