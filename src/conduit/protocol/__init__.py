"""Wire protocol — typed agent events and the line-delimited JSON codec."""

from conduit.protocol.codec import LineAssembler, decode, decode_object, encode
from conduit.protocol.events import (
    AgentEvent,
    AssistantText,
    Closed,
    Crashed,
    Decoded,
    DecodeError,
    DecodeErrorKind,
    Envelope,
    EventSource,
    Frame,
    HistoryReplayed,
    IdAssigned,
    Init,
    LifecycleEvent,
    RoutedEvent,
    Skip,
    Started,
    Thinking,
    ToolCall,
    ToolResult,
    TurnMetadata,
    UserPrompt,
)

__all__ = [
    "AgentEvent",
    "AssistantText",
    "Closed",
    "Crashed",
    "DecodeError",
    "DecodeErrorKind",
    "Decoded",
    "Envelope",
    "EventSource",
    "Frame",
    "HistoryReplayed",
    "IdAssigned",
    "Init",
    "LifecycleEvent",
    "LineAssembler",
    "RoutedEvent",
    "Skip",
    "Started",
    "Thinking",
    "ToolCall",
    "ToolResult",
    "TurnMetadata",
    "UserPrompt",
    "decode",
    "decode_object",
    "encode",
]
