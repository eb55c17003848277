"""Typed shapes of the MeOS information server feed.

The lexical parser hands over a loosely-typed tree where attributes live under
``"$"``, element text under ``"_"`` and every child element is a list keyed by
its tag. The models below validate that tree into exactly one of two payload
shapes, ``Snapshot`` (``MOPComplete``) or ``Diff`` (``MOPDiff``).
"""

from typing import Any, ClassVar, List, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from punchboard.feed.client import FeedError
from .enums import FeedDocumentKind


class DocumentValidationError(FeedError):
    """Raised when a parsed document matches neither a snapshot nor a diff."""

    pass


class FeedNode(BaseModel):
    """An element of the parsed tree; a text-only element arrives as a bare string."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"_": value}
        return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


# --- Reference records (kept for context, not merged) ---


class CompetitionAttributes(BaseModel):
    date: Optional[str] = None  # YYYY-MM-DD
    organizer: Optional[str] = None
    homepage: Optional[str] = None


class CompetitionRecord(FeedNode):
    attributes: CompetitionAttributes = Field(
        default_factory=CompetitionAttributes, alias="$"
    )
    name: Optional[str] = Field(None, alias="_")


class ControlAttributes(BaseModel):
    id: str


class ControlRecord(FeedNode):
    attributes: ControlAttributes = Field(alias="$")
    name: Optional[str] = Field(None, alias="_")


class ClassAttributes(BaseModel):
    id: str
    ord: Optional[str] = None
    radio: Optional[str] = None  # comma separated radio control ids


class ClassRecord(FeedNode):
    attributes: ClassAttributes = Field(alias="$")
    name: Optional[str] = Field(None, alias="_")


class OrganizationAttributes(BaseModel):
    id: str
    nat: Optional[str] = None


class OrganizationRecord(FeedNode):
    attributes: OrganizationAttributes = Field(alias="$")
    name: Optional[str] = Field(None, alias="_")


# --- Teams ---


class TeamAttributes(BaseModel):
    id: str
    delete: bool = False


class TeamBaseAttributes(BaseModel):
    org: Optional[str] = None
    cls: Optional[str] = None
    stat: Optional[str] = None
    st: Optional[str] = None
    rt: Optional[str] = None
    bib: Optional[str] = None


class TeamBase(FeedNode):
    attributes: TeamBaseAttributes = Field(
        default_factory=TeamBaseAttributes, alias="$"
    )
    name: Optional[str] = Field(None, alias="_")


class TeamRecord(FeedNode):
    attributes: TeamAttributes = Field(alias="$")
    base: List[TeamBase] = Field(default_factory=list)
    runners: List[str] = Field(default_factory=list, alias="r")

    @property
    def id(self) -> str:
        return self.attributes.id

    @property
    def deleted(self) -> bool:
        return self.attributes.delete

    @property
    def bib_number(self) -> Optional[str]:
        if not self.base:
            return None
        return self.base[0].attributes.bib

    @property
    def roster(self) -> str:
        """Raw roster string: legs separated by ';', runners within a leg by ','."""
        return self.runners[0] if self.runners else ""


# --- Competitors ---


class CompetitorAttributes(BaseModel):
    id: str
    card: Optional[str] = None
    delete: bool = False


class CompetitorBaseAttributes(BaseModel):
    org: Optional[str] = None
    cls: Optional[str] = None
    stat: Optional[str] = None
    # Both in tenths of a second; st since local midnight, rt since st.
    st: Optional[int] = None
    rt: Optional[int] = None

    @field_validator("st", "rt", mode="before")
    @classmethod
    def _blank_times(cls, value: Any) -> Any:
        return _blank_to_none(value)


class CompetitorBase(FeedNode):
    attributes: CompetitorBaseAttributes = Field(
        default_factory=CompetitorBaseAttributes, alias="$"
    )
    name: Optional[str] = Field(None, alias="_")


class CompetitorRecord(FeedNode):
    attributes: CompetitorAttributes = Field(alias="$")
    base: List[CompetitorBase] = Field(default_factory=list)
    radio: List[str] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.attributes.id

    @property
    def deleted(self) -> bool:
        return self.attributes.delete

    @property
    def card(self) -> Optional[str]:
        return self.attributes.card

    @property
    def name(self) -> Optional[str]:
        if not self.base:
            return None
        return self.base[0].name

    @property
    def start_time(self) -> Optional[int]:
        if not self.base:
            return None
        return self.base[0].attributes.st

    @property
    def radio_visits(self) -> Optional[List[Tuple[str, str]]]:
        """Radio visits as (control, running time) string pairs, or None if absent.

        The running time is left unparsed so a single malformed visit can be
        skipped without rejecting the whole document.
        """
        if not self.radio:
            return None
        visits = []
        for visit in self.radio[0].split(";"):
            control, _, running_time = visit.partition(",")
            visits.append((control, running_time))
        return visits


# --- Payloads ---


class PayloadAttributes(BaseModel):
    nextdifference: str


class FeedPayload(FeedNode):
    """Record lists shared by snapshots and diffs, plus the next cursor."""

    kind: ClassVar[FeedDocumentKind]

    attributes: PayloadAttributes = Field(alias="$")
    competition: Optional[List[CompetitionRecord]] = None
    controls: Optional[List[ControlRecord]] = Field(None, alias="ctrl")
    classes: Optional[List[ClassRecord]] = Field(None, alias="cls")
    organizations: Optional[List[OrganizationRecord]] = Field(None, alias="org")
    teams: Optional[List[TeamRecord]] = Field(None, alias="tm")
    competitors: Optional[List[CompetitorRecord]] = Field(None, alias="cmp")

    @property
    def next_cursor(self) -> str:
        return self.attributes.nextdifference


class Snapshot(FeedPayload):
    kind: ClassVar[FeedDocumentKind] = FeedDocumentKind.SNAPSHOT


class Diff(FeedPayload):
    kind: ClassVar[FeedDocumentKind] = FeedDocumentKind.DIFF


class SnapshotDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payload: Snapshot = Field(alias=FeedDocumentKind.SNAPSHOT.value)


class DiffDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payload: Diff = Field(alias=FeedDocumentKind.DIFF.value)


_document_adapter: TypeAdapter = TypeAdapter(Union[SnapshotDocument, DiffDocument])


def validate_document(tree: Any) -> Union[Snapshot, Diff]:
    """Discriminates a parsed tree into a Snapshot or a Diff.

    Raises:
        DocumentValidationError: if the tree matches neither shape.
    """
    try:
        document = _document_adapter.validate_python(tree)
    except ValidationError as e:
        raise DocumentValidationError(
            f"Feed document matches neither snapshot nor diff: {e.error_count()} error(s)"
        ) from e
    return document.payload
