"""Worker control protocol message types.

Inbound messages form a closed tagged union on the ``type`` field:

- ``Response``: ``type == "response"``, correlated to a request by ``id``
- ``ExtensionUiRequest``: the worker is blocked waiting for external input
- ``WorkerEvent``: anything else (streaming output, lifecycle notices, ...)

Outbound commands are plain dicts built by the ``*_command`` helpers.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

_log = logging.getLogger("projectd.protocol")

RESPONSE = "response"
EXTENSION_UI_REQUEST = "extension_ui_request"

# Command names
NEW_SESSION = "new_session"
GET_STATE = "get_state"
PROMPT = "prompt"
ABORT = "abort"


class WorkerModel(BaseModel):
    """Base model for protocol types; unknown fields are kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Response(WorkerModel):
    """Reply to a command, matched to its request by id."""

    type: Literal["response"] = RESPONSE
    id: str
    success: bool
    command: str
    data: dict[str, Any] | None = None
    error: str | None = None


class ExtensionUiRequest(WorkerModel):
    """Worker asks for external input (confirmation, selection, ...).

    Classified by ``type`` alone; the other fields are passed through as sent.
    """

    type: Literal["extension_ui_request"] = EXTENSION_UI_REQUEST
    id: Any = None
    method: Any = None
    title: Any = None


class WorkerEvent(WorkerModel):
    """Catch-all for any other unsolicited message."""

    type: str | None = None


InboundMessage = Response | ExtensionUiRequest | WorkerEvent


class WorkerState(WorkerModel):
    """Data payload of a successful ``get_state`` response.

    Values are kept as sent, without coercion: ``"false"`` or ``0`` for
    ``isStreaming`` is not the JSON literal ``false`` and never reads as idle.
    """

    is_streaming: Any = Field(default=None, alias="isStreaming")
    pending_message_count: Any = Field(default=0, alias="pendingMessageCount")

    @property
    def idle(self) -> bool:
        """True when ``isStreaming`` is ``false`` and no messages are queued."""
        count = 0 if self.pending_message_count is None else self.pending_message_count
        return self.is_streaming is False and type(count) is int and count == 0


def parse_message(data: dict[str, Any]) -> InboundMessage:
    """Classify a decoded line into its message variant.

    Responses missing required fields degrade to ``WorkerEvent`` so they are
    still observable but never resolve a pending request.
    """
    msg_type = data.get("type")

    if msg_type == RESPONSE:
        try:
            return Response.model_validate(data)
        except ValidationError as e:
            _log.warning("Malformed response (id=%s): %s", data.get("id"), e.errors()[:1])
            return WorkerEvent.model_validate(data)

    if msg_type == EXTENSION_UI_REQUEST:
        return ExtensionUiRequest.model_validate(data)

    if msg_type is not None and not isinstance(msg_type, str):
        data = {**data, "type": str(msg_type)}
    return WorkerEvent.model_validate(data)


def new_session_command(parent_session: str | None = None) -> dict[str, Any]:
    command: dict[str, Any] = {"type": NEW_SESSION}
    if parent_session is not None:
        command["parentSession"] = parent_session
    return command


def get_state_command() -> dict[str, Any]:
    return {"type": GET_STATE}


def prompt_command(message: str) -> dict[str, Any]:
    return {"type": PROMPT, "message": message}


def abort_command() -> dict[str, Any]:
    return {"type": ABORT}
