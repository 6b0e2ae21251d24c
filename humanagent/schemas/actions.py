"""
Action directive schemas

Closed set of side effects a model response may request.  Each directive is
a pydantic model discriminated by its ``type`` literal; anything outside the
set fails validation and is dropped by the parser.  Field names follow the
camelCase keys models are prompted with (``taskId``), exposed in Python as
snake_case attributes.

Free-text fields are clipped rather than rejected so a verbose model does not
lose an otherwise valid action.
"""

from typing import Annotated
from typing import Any
from typing import Dict
from typing import List
from typing import Literal
from typing import Optional
from typing import Union

from pydantic import AfterValidator
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import TypeAdapter
from pydantic import field_validator
from pydantic import model_validator

from humanagent.models.enums import NodeType


def _clip(limit: int):
    def _apply(value: str) -> str:
        return value.strip()[:limit]

    return AfterValidator(_apply)


def _clip_list(limit: int):
    def _apply(value: list) -> list:
        return value[:limit]

    return AfterValidator(_apply)


def _required(value: str) -> str:
    if not value:
        raise ValueError("must not be empty")
    return value


def Text(limit: int):  # noqa: N802 - used like a type
    """Required string clipped to *limit* characters (clip first, then reject empty)."""
    return Annotated[str, _clip(limit), AfterValidator(_required)]


def OptionalText(limit: int):  # noqa: N802 - used like a type
    return Optional[Annotated[str, _clip(limit)]]


# Upper bound on outcome text accepted from a single directive.  Long outcomes
# are moved to blob storage by the executor.
MAX_OUTCOME_CHARS = 200_000


class _Action(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class Capability(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Text(64)
    description: Annotated[str, _clip(320)] = ""


class CreateTaskAction(_Action):
    type: Literal["create_task"]
    description: Text(800)
    is_public: bool = Field(False, alias="isPublic")


class UpdateTaskStatusAction(_Action):
    type: Literal["update_task_status"]
    task_id: int = Field(alias="taskId")
    status: Literal["pending", "in_progress", "completed", "failed"]
    outcome_summary: OptionalText(MAX_OUTCOME_CHARS) = Field(None, alias="outcomeSummary")
    outcome_links: Annotated[List[Annotated[str, _clip(2048)]], _clip_list(8)] = Field(
        default_factory=list, alias="outcomeLinks"
    )


class MoveTaskAction(_Action):
    type: Literal["move_task"]
    task_id: int = Field(alias="taskId")
    board_column_id: Optional[int] = Field(None, alias="boardColumnId")
    board_column_name: OptionalText(80) = Field(None, alias="boardColumnName")

    @model_validator(mode="after")
    def _needs_target(self):
        if self.board_column_id is None and not self.board_column_name:
            raise ValueError("move_task needs boardColumnId or boardColumnName")
        return self


class CreateSubtaskAction(_Action):
    type: Literal["create_subtask"]
    parent_task_id: int = Field(alias="parentTaskId")
    description: Text(800)
    is_public: bool = Field(False, alias="isPublic")


class DelegateToAgentAction(_Action):
    type: Literal["delegate_to_agent"]
    target_agent_slug: Text(80) = Field(alias="targetAgentSlug")
    task_description: Text(4000) = Field(alias="taskDescription")


class CreateFeedItemAction(_Action):
    type: Literal["create_feed_item"]
    title: Text(120)
    content: OptionalText(320) = None
    is_public: bool = Field(False, alias="isPublic")


class CreateSkillAction(_Action):
    type: Literal["create_skill"]
    name: Text(80)
    bio: OptionalText(1200) = None
    capabilities: Annotated[List[Capability], _clip_list(25)] = Field(default_factory=list)


class UpdateSkillAction(_Action):
    type: Literal["update_skill"]
    skill_id: int = Field(alias="skillId")
    name: OptionalText(80) = None
    bio: OptionalText(1200) = None
    capabilities: Optional[Annotated[List[Capability], _clip_list(25)]] = None
    is_active: Optional[bool] = Field(None, alias="isActive")


class GenerateImageAction(_Action):
    type: Literal["generate_image"]
    prompt: Text(1000)
    task_id: Optional[int] = Field(None, alias="taskId")


class GenerateAudioAction(_Action):
    type: Literal["generate_audio"]
    text: Text(5000)
    task_id: Optional[int] = Field(None, alias="taskId")


class CallToolAction(_Action):
    type: Literal["call_tool"]
    tool_name: Text(120) = Field(alias="toolName")
    input: Dict[str, Any] = Field(default_factory=dict)
    task_id: Optional[int] = Field(None, alias="taskId")


class CreateKnowledgeNodeAction(_Action):
    type: Literal["create_knowledge_node"]
    title: Text(120)
    description: Annotated[str, _clip(200)] = ""
    content: Annotated[str, _clip(12000)] = ""
    node_type: NodeType = Field(NodeType.CONCEPT, alias="nodeType")
    tags: Annotated[List[Annotated[str, _clip(40)]], _clip_list(20)] = Field(default_factory=list)

    @field_validator("node_type", mode="before")
    @classmethod
    def _default_node_type(cls, value):
        try:
            return NodeType(str(value).strip().lower())
        except ValueError:
            return NodeType.CONCEPT


class LinkKnowledgeNodesAction(_Action):
    type: Literal["link_knowledge_nodes"]
    source_node_id: int = Field(alias="sourceNodeId")
    target_node_id: int = Field(alias="targetNodeId")


AppAction = Annotated[
    Union[
        CreateTaskAction,
        UpdateTaskStatusAction,
        MoveTaskAction,
        CreateSubtaskAction,
        DelegateToAgentAction,
        CreateFeedItemAction,
        CreateSkillAction,
        UpdateSkillAction,
        GenerateImageAction,
        GenerateAudioAction,
        CallToolAction,
        CreateKnowledgeNodeAction,
        LinkKnowledgeNodesAction,
    ],
    Field(discriminator="type"),
]

app_action_adapter: TypeAdapter = TypeAdapter(AppAction)

ACTION_TYPES = frozenset(
    {
        "create_task",
        "update_task_status",
        "move_task",
        "create_subtask",
        "delegate_to_agent",
        "create_feed_item",
        "create_skill",
        "update_skill",
        "generate_image",
        "generate_audio",
        "call_tool",
        "create_knowledge_node",
        "link_knowledge_nodes",
    }
)
