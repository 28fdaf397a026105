"""Swipe (alternative completion) management for chat messages.

Every public helper returns ``False``/``None`` instead of raising when the
message carries structurally invalid swipe data; one corrupted message must
never take the whole session down.
"""

from __future__ import annotations

import copy
import logging
from enum import Enum
from typing import Callable, Iterable, Optional

from .message_model import ChatMessage, SwipeInfo, format_send_date

__all__ = [
    "SwipeNavigation",
    "has_valid_swipes",
    "ensure_swipes",
    "add_swipe",
    "navigate",
    "delete_swipe",
    "sync_active_to_swipe",
    "sync_swipe_to_active",
    "build_greeting",
]

LOGGER = logging.getLogger(__name__)


class SwipeNavigation(str, Enum):
    """Outcome of :func:`navigate`."""

    MOVED = "moved"
    BLOCKED = "blocked"
    NEEDS_GENERATION = "needs_generation"


def has_valid_swipes(message: ChatMessage) -> bool:
    """Return True when the swipe arrays satisfy the model invariants."""

    swipes = message.swipes
    info = message.swipe_info
    swipe_id = message.swipe_id
    if not isinstance(swipes, list) or not swipes:
        return False
    if not all(isinstance(item, str) for item in swipes):
        return False
    if not isinstance(swipe_id, int) or isinstance(swipe_id, bool):
        return False
    if not 0 <= swipe_id < len(swipes):
        return False
    if not isinstance(info, list) or len(info) != len(swipes):
        return False
    return all(isinstance(item, SwipeInfo) for item in info)


def _info_from_message(message: ChatMessage) -> SwipeInfo:
    return SwipeInfo(
        send_date=message.send_date,
        gen_started=message.gen_started,
        gen_finished=message.gen_finished,
        extra=copy.deepcopy(message.extra),
    )


def ensure_swipes(message: ChatMessage) -> bool:
    """Initialize swipe arrays from the active text when they are absent.

    Missing ``swipe_info`` entries are padded so legacy chats load cleanly.
    Data that is present but malformed is left untouched and reported as
    ``False``.
    """

    if message.swipes is None:
        message.swipes = [message.mes]
        message.swipe_id = 0
        message.swipe_info = [_info_from_message(message)]
        return True
    if not isinstance(message.swipes, list):
        LOGGER.debug("Message %r has non-list swipes; leaving as-is", message.name)
        return False
    if message.swipe_info is None:
        message.swipe_info = []
    if isinstance(message.swipe_info, list) and len(message.swipe_info) < len(message.swipes):
        message.swipe_info.extend(
            SwipeInfo(send_date=message.send_date)
            for _ in range(len(message.swipes) - len(message.swipe_info))
        )
    if message.swipe_id is None and message.swipes:
        message.swipe_id = 0
    return has_valid_swipes(message)


def sync_active_to_swipe(message: ChatMessage) -> bool:
    """Copy ``mes``, timestamps and ``extra`` into the active swipe slot."""

    if not has_valid_swipes(message):
        LOGGER.debug("Skipping active->swipe sync for %r: invalid swipe data", message.name)
        return False
    index = message.swipe_id
    assert message.swipes is not None and message.swipe_info is not None and index is not None
    message.swipes[index] = message.mes
    message.swipe_info[index] = _info_from_message(message)
    return True


def sync_swipe_to_active(message: ChatMessage, index: Optional[int] = None) -> bool:
    """Load swipe ``index`` (default: the active one) into the message fields."""

    if not has_valid_swipes(message):
        LOGGER.debug("Skipping swipe->active sync for %r: invalid swipe data", message.name)
        return False
    assert message.swipes is not None and message.swipe_info is not None
    target = message.swipe_id if index is None else index
    if not isinstance(target, int) or not 0 <= target < len(message.swipes):
        return False
    info = message.swipe_info[target]
    message.swipe_id = target
    message.mes = message.swipes[target]
    message.send_date = info.send_date or message.send_date
    message.gen_started = info.gen_started
    message.gen_finished = info.gen_finished
    message.extra = copy.deepcopy(info.extra)
    return True


def add_swipe(
    message: ChatMessage,
    text: str = "",
    info: SwipeInfo | None = None,
) -> Optional[int]:
    """Append a new candidate, make it active and return its index."""

    if not ensure_swipes(message):
        return None
    sync_active_to_swipe(message)
    assert message.swipes is not None and message.swipe_info is not None
    message.swipes.append(text)
    message.swipe_info.append(info or SwipeInfo(send_date=format_send_date()))
    index = len(message.swipes) - 1
    sync_swipe_to_active(message, index)
    return index


def navigate(
    message: ChatMessage,
    direction: int,
    *,
    is_greeting_untouched: bool = False,
) -> SwipeNavigation:
    """Move the active swipe left (``direction < 0``) or right.

    Wrapping around only happens on the greeting of an otherwise untouched
    chat. Moving right past the last candidate anywhere else means a new
    candidate has to be generated by the caller.
    """

    if direction == 0 or not ensure_swipes(message):
        return SwipeNavigation.BLOCKED
    assert message.swipes is not None and message.swipe_id is not None
    count = len(message.swipes)
    current = message.swipe_id
    if direction < 0:
        if current > 0:
            target = current - 1
        elif is_greeting_untouched and count > 1:
            target = count - 1
        else:
            return SwipeNavigation.BLOCKED
    else:
        if current < count - 1:
            target = current + 1
        elif is_greeting_untouched and count > 1:
            target = 0
        else:
            return SwipeNavigation.NEEDS_GENERATION
    sync_active_to_swipe(message)
    sync_swipe_to_active(message, target)
    return SwipeNavigation.MOVED


def delete_swipe(message: ChatMessage, index: int) -> bool:
    """Remove one candidate; refused when it is the last remaining one."""

    if not has_valid_swipes(message):
        return False
    assert message.swipes is not None and message.swipe_info is not None
    count = len(message.swipes)
    if count <= 1:
        LOGGER.debug("Refusing to delete the only swipe of %r", message.name)
        return False
    if not isinstance(index, int) or not 0 <= index < count:
        return False
    sync_active_to_swipe(message)
    message.swipes.pop(index)
    message.swipe_info.pop(index)
    message.swipe_id = min(index, len(message.swipes) - 1)
    return sync_swipe_to_active(message)


def build_greeting(
    name: str,
    first_mes: str,
    alternate_greetings: Iterable[str] = (),
    *,
    substitute: Callable[[str], str] | None = None,
) -> ChatMessage:
    """Create the opening message with alternate greetings as extra swipes."""

    render = substitute or (lambda text: text)
    candidates = [render(first_mes)] + [render(item) for item in alternate_greetings]
    message = ChatMessage(name=name, mes=candidates[0])
    message.swipes = candidates
    message.swipe_id = 0
    message.swipe_info = [SwipeInfo(send_date=message.send_date) for _ in candidates]
    return message
