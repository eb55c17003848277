# punchboard/utils/misc_utils.py
from typing import Optional

MISSING_CARD = "-"


def punch_identity(
    control: str, leg: int, leg_runner: int, bib_number: str, card: Optional[str]
) -> str:
    """Builds the identity key under which a punch is announced at most once.

    The visit sequence is not part of the key, so repeated visits to the same
    control by the same runner collapse into one punch.
    """
    return f"{control}:{leg}:{leg_runner}:{bib_number}:{card or MISSING_CARD}"
