"""
Input models for every tool in the catalog.

Each tool declares one pydantic model; ``validate_args`` turns a raw
argument payload into an instance of it, or raises InvalidParamsError
listing every failing field path.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import (
    AliasGenerator,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import InvalidParamsError

M = TypeVar("M", bound=BaseModel)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
TextStr = Annotated[str, StringConstraints(min_length=1)]

RunStepKind = Literal["note", "tool_call", "artifact", "link"]
TerminalStatus = Literal["completed", "failed"]


def validate_args(model: Type[M], raw: Any) -> M:
    """Validate ``raw`` against ``model``; a missing payload counts as ``{}``."""
    try:
        return model.model_validate(raw if raw is not None else {})
    except ValidationError as exc:
        issues = []
        for err in exc.errors():
            path = ".".join(str(part) for part in err["loc"]) or "root"
            issues.append((path, err["msg"]))
        raise InvalidParamsError(issues) from None


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")


class EventSourceArgs(ToolArgs):
    source: Optional[NonEmptyStr] = Field(None, description="Origin of the event")
    source_event_id: Optional[NonEmptyStr] = Field(
        None, description="Original ID from the source"
    )


# Memory


class MemoryPutArgs(EventSourceArgs):
    key: NonEmptyStr
    value: TextStr
    tags: Optional[List[NonEmptyStr]] = None


class MemoryGetArgs(ToolArgs):
    key: NonEmptyStr


class MemorySearchArgs(ToolArgs):
    query: str = ""
    tags: Optional[List[NonEmptyStr]] = None


# Artifacts


class ArtifactCreateArgs(EventSourceArgs):
    type: NonEmptyStr
    name: Optional[NonEmptyStr] = None
    content_type: Optional[NonEmptyStr] = None
    content_text: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ArtifactGetArgs(ToolArgs):
    id: NonEmptyStr


class ArtifactListArgs(ToolArgs):
    type: Optional[NonEmptyStr] = None


# Links


class EntityRefArgs(ToolArgs):
    type: NonEmptyStr
    id: NonEmptyStr


class LinkAddArgs(EventSourceArgs):
    model_config = ConfigDict(populate_by_name=True)

    from_ref: EntityRefArgs = Field(alias="from")
    to_ref: EntityRefArgs = Field(alias="to")
    label: Optional[NonEmptyStr] = None
    url: Optional[NonEmptyStr] = None


class LinkListArgs(ToolArgs):
    from_type: Optional[NonEmptyStr] = None
    from_id: Optional[NonEmptyStr] = None
    to_type: Optional[NonEmptyStr] = None
    to_id: Optional[NonEmptyStr] = None


# Runs


class RunStartArgs(EventSourceArgs):
    name: NonEmptyStr


class RunStepArgs(EventSourceArgs):
    run_id: NonEmptyStr
    kind: RunStepKind
    message: TextStr
    data: Optional[Dict[str, Any]] = None


class RunCompleteArgs(ToolArgs):
    run_id: NonEmptyStr
    status: TerminalStatus


class RunGetArgs(ToolArgs):
    run_id: NonEmptyStr


class RunListArgs(ToolArgs):
    limit: int = Field(50, ge=1, le=500)


# Connectors


class FigmaImportArgs(ToolArgs):
    file_key: NonEmptyStr


class GithubPutFileArgs(ToolArgs):
    owner: NonEmptyStr
    repo: NonEmptyStr
    path: NonEmptyStr
    content: str = Field(
        description="Raw file contents (UTF-8). Will be base64-encoded by the hub."
    )
    message: NonEmptyStr
    branch: NonEmptyStr


class GithubCreatePrArgs(ToolArgs):
    owner: NonEmptyStr
    repo: NonEmptyStr
    head: NonEmptyStr
    base: NonEmptyStr
    title: NonEmptyStr
    body: Optional[str] = None


class ConfluenceUpsertPageArgs(ToolArgs):
    space_key: NonEmptyStr
    title: NonEmptyStr
    body_html: TextStr = Field(description="HTML body")


class SlackPostMessageArgs(ToolArgs):
    channel: NonEmptyStr
    text: TextStr


# Gamma

TextMode = Literal["generate", "condense", "preserve"]
Format = Literal["presentation", "document", "social"]
TextAmount = Literal["brief", "medium", "detailed", "extensive"]
ImageSource = Literal[
    "aiGenerated",
    "pictographic",
    "unsplash",
    "webAllImages",
    "webFreeToUse",
    "webFreeToUseCommercially",
    "giphy",
    "placeholder",
    "noImages",
]
CardSplit = Literal["auto", "inputTextBreaks"]
ExportType = Literal["pdf", "pptx"]
CardDimension = Literal[
    "fluid", "16x9", "4x3", "pageless", "letter", "a4", "1x1", "4x5", "9x16"
]
WorkspaceAccess = Literal["noAccess", "view", "comment", "edit", "fullAccess"]
ExternalAccess = Literal["noAccess", "view", "comment", "edit"]

CARD_DIMENSIONS_BY_FORMAT = {
    "presentation": ("fluid", "16x9", "4x3"),
    "document": ("fluid", "pageless", "letter", "a4"),
    "social": ("1x1", "4x5", "9x16"),
}

MAX_NUM_CARDS = 75


class GammaArgs(ToolArgs):
    """Snake_case on input, camelCase when dumped for the Gamma API."""

    model_config = ConfigDict(
        extra="ignore",
        alias_generator=AliasGenerator(serialization_alias=to_camel),
    )

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class GammaTextOptions(GammaArgs):
    amount: Optional[TextAmount] = None
    tone: Optional[str] = None
    audience: Optional[str] = None
    language: Optional[str] = None


class GammaImageOptions(GammaArgs):
    source: Optional[ImageSource] = None
    model: Optional[str] = None
    style: Optional[str] = None


class GammaCardOptions(GammaArgs):
    dimensions: Optional[CardDimension] = None


class GammaSharingOptions(GammaArgs):
    workspace_access: Optional[WorkspaceAccess] = None
    external_access: Optional[ExternalAccess] = None


class GammaGenerateArgs(GammaArgs):
    input_text: TextStr
    text_mode: Optional[TextMode] = None
    format: Optional[Format] = None
    theme_name: Optional[str] = None
    num_cards: Optional[int] = Field(None, ge=1, le=MAX_NUM_CARDS)
    card_split: Optional[CardSplit] = None
    additional_instructions: Optional[str] = None
    export_as: Optional[Union[ExportType, List[ExportType]]] = None
    text_options: Optional[GammaTextOptions] = None
    image_options: Optional[GammaImageOptions] = None
    card_options: Optional[GammaCardOptions] = None
    sharing_options: Optional[GammaSharingOptions] = None

    @model_validator(mode="after")
    def _dimensions_match_format(self):
        dims = self.card_options.dimensions if self.card_options else None
        if dims and self.format and dims not in CARD_DIMENSIONS_BY_FORMAT[self.format]:
            allowed = ", ".join(CARD_DIMENSIONS_BY_FORMAT[self.format])
            raise ValueError(
                f"card dimensions '{dims}' not valid for format '{self.format}' "
                f"(allowed: {allowed})"
            )
        return self


class GammaGetStatusArgs(ToolArgs):
    generation_id: NonEmptyStr


class GammaGetThemesArgs(ToolArgs):
    pass


# Management API

ConnectionType = Literal["SSE MCP Server", "stdio MCP Server", "Custom HTTP Tool"]


class ConnectionCreateArgs(ToolArgs):
    name: NonEmptyStr
    type: ConnectionType
    endpoint: NonEmptyStr
    api_key: Optional[NonEmptyStr] = None
    enabled: bool = True
    metadata: Optional[Dict[str, Any]] = None


class ConnectionUpdateArgs(ToolArgs):
    name: Optional[NonEmptyStr] = None
    type: Optional[ConnectionType] = None
    endpoint: Optional[NonEmptyStr] = None
    api_key: Optional[NonEmptyStr] = None
    enabled: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None
