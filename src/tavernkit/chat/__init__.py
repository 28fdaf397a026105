"""Chat session data: messages, swipes, session state and chat files."""

from .message_model import ChatMessage, SwipeInfo
from .session import CharacterCard, ChatMetadata, DepthPrompt, GroupMember, Persona, PersonaPosition, Session
from .swipes import SwipeNavigation

__all__ = [
    "ChatMessage",
    "SwipeInfo",
    "CharacterCard",
    "ChatMetadata",
    "DepthPrompt",
    "GroupMember",
    "Persona",
    "PersonaPosition",
    "Session",
    "SwipeNavigation",
]
