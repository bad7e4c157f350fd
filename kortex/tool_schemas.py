"""
Typed tool schemas for Kortex.

Provides Pydantic models for the arguments of the five action contract
operations. Planners see the descriptions; code sees the validated models.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .types import ActionName


# =============================================================================
# Request Schemas
# =============================================================================

class _Request(BaseModel):
    """Base for all requests: the argument shape is fixed."""

    model_config = ConfigDict(extra="forbid")


class NavigateRequest(_Request):
    """Request to navigate to a URL."""

    url: str = Field(description="URL to open (a bare host gets https://)")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("URL cannot be empty")
        return v.strip()


class ClickRequest(_Request):
    """Request to click an element."""

    selector: str = Field(description="CSS selector taken from a snapshot node")

    @field_validator("selector")
    @classmethod
    def validate_selector(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Selector cannot be empty")
        return v.strip()


class TypeRequest(_Request):
    """Request to type text into an element, replacing its content."""

    selector: str = Field(description="CSS selector of the input field")
    text: str = Field(description="Text that replaces the field content")

    @field_validator("selector")
    @classmethod
    def validate_selector(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Selector cannot be empty")
        return v.strip()


class HighlightRequest(_Request):
    """Request to draw an outline and a label around an element."""

    selector: str = Field(description="CSS selector of the element to highlight")
    message: str = Field(
        default="",
        description="Short label shown next to the element"
    )

    @field_validator("selector")
    @classmethod
    def validate_selector(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Selector cannot be empty")
        return v.strip()


class GetSnapshotRequest(_Request):
    """Request for the accessibility snapshot of the current page."""


# =============================================================================
# Schema Registry
# =============================================================================

ACTION_SCHEMAS: dict[ActionName, type[BaseModel]] = {
    ActionName.NAVIGATE: NavigateRequest,
    ActionName.CLICK: ClickRequest,
    ActionName.TYPE: TypeRequest,
    ActionName.HIGHLIGHT: HighlightRequest,
    ActionName.GET_SNAPSHOT: GetSnapshotRequest,
}

# Read by the planner, never by code
ACTION_DESCRIPTIONS: dict[ActionName, str] = {
    ActionName.NAVIGATE: "Navigates to a specified URL and waits for the page to load.",
    ActionName.CLICK: "Clicks on an element specified by the selector.",
    ActionName.TYPE: "Types text into an element specified by the selector, replacing its current content.",
    ActionName.HIGHLIGHT: "Highlights an element to show the user where the agent is looking.",
    ActionName.GET_SNAPSHOT: "Gets a text snapshot of the current page accessibility tree.",
}


def parse_action_name(name: str) -> Optional[ActionName]:
    """Map a tool name to its ActionName, or None if it is not part of the contract."""
    try:
        return ActionName(name)
    except ValueError:
        return None


def validate_action_args(
    action: ActionName, args: dict[str, Any]
) -> tuple[bool, Optional[BaseModel], Optional[str]]:
    """Validate action arguments against schema.

    Args:
        action: Action name
        args: Arguments to validate

    Returns:
        Tuple of (is_valid, validated_model, error_message)
    """
    schema = ACTION_SCHEMAS[action]
    try:
        return True, schema(**(args or {})), None
    except ValidationError as e:
        return False, None, str(e)
    except TypeError as e:
        return False, None, str(e)


def tool_spec(action: ActionName) -> dict[str, Any]:
    """OpenAI-style function spec for one operation."""
    schema = ACTION_SCHEMAS[action].model_json_schema()
    parameters = {
        "type": "object",
        "properties": schema.get("properties", {}),
        "required": schema.get("required", []),
    }
    return {
        "type": "function",
        "function": {
            "name": action.value,
            "description": ACTION_DESCRIPTIONS[action],
            "parameters": parameters,
        },
    }
