"""Pydantic schemas for inbound commands."""
from typing import Any, Dict, Literal, Optional, Type

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from bonsai.core.errors import ValidationError


class Command(BaseModel):
    """Base schema: every command carries its name in ``command``."""
    command: str

    model_config = {"populate_by_name": True, "extra": "ignore"}


class EndpointFields(BaseModel):
    """Optional LLM endpoint override carried by several commands."""
    base_url: Optional[str] = Field(None, alias="baseUrl", description="host:port/path, no scheme")
    model: Optional[str] = Field(None, description="Model identifier")


class TrimCommand(Command):
    """Delete a node and its subtree."""
    command: Literal["trim"] = "trim"
    id: int


class ExportCommand(Command):
    command: Literal["exportJSON"] = "exportJSON"


class ImportCommand(Command):
    """Replace the tree with a snapshot given as raw JSON text."""
    command: Literal["importJSON"] = "importJSON"
    content: str

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
        "json_schema_extra": {
            "example": {
                "command": "importJSON",
                "content": "{\"schema\": \"bonsai.v1\", \"branches\": []}"
            }
        }
    }


class SelectNodeCommand(Command):
    command: Literal["selectNode"] = "selectNode"
    id: int


class UnselectNodeCommand(Command):
    command: Literal["unselectNode"] = "unselectNode"


class GenerateCommand(Command, EndpointFields):
    """Generate one or more sibling versions under the selected node."""
    command: Literal["generate"] = "generate"
    prompt: Optional[str] = Field(None, description="Instruction; templated from activity when omitted")
    code: str = Field("", description="Base code sent with the instruction")
    version_count: int = Field(1, alias="versionCount", ge=1, description="Number of siblings")
    activity: Optional[str] = Field(None, description="Activity tag, defaults to custom")
    problem: Optional[str] = Field(None, description="Problem description for fix_with_context")
    language: Optional[str] = Field(None, description="Editor language id, e.g. python")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
        "json_schema_extra": {
            "example": {
                "command": "generate",
                "prompt": "Refactor this function",
                "code": "def f(x):\n    return x*2",
                "versionCount": 2,
                "activity": "refactor"
            }
        }
    }


class UpdateConfigCommand(Command, EndpointFields):
    command: Literal["updateConfig"] = "updateConfig"


class ConnectionTestCommand(Command, EndpointFields):
    command: Literal["testConnection"] = "testConnection"


class ProcessAgentMdCommand(Command, EndpointFields):
    """Synthesize code from an Agent.md document (no node is created)."""
    command: Literal["processAgentMd"] = "processAgentMd"
    content: str = ""


COMMANDS: Dict[str, Type[Command]] = {
    "trim": TrimCommand,
    "exportJSON": ExportCommand,
    "importJSON": ImportCommand,
    "selectNode": SelectNodeCommand,
    "unselectNode": UnselectNodeCommand,
    "generate": GenerateCommand,
    "updateConfig": UpdateConfigCommand,
    "testConnection": ConnectionTestCommand,
    "processAgentMd": ProcessAgentMdCommand,
}


def parse_command(message: Any) -> Optional[Command]:
    """
    Validate an inbound message against its command schema.

    Returns:
        The parsed command, or None when the command name is unknown

    Raises:
        ValidationError: If the message is not an object or its fields are invalid
    """
    if not isinstance(message, dict):
        raise ValidationError("Command must be a JSON object")
    schema = COMMANDS.get(message.get("command"))
    if schema is None:
        return None
    try:
        return schema.model_validate(message)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid {message['command']} command: {details}") from e
