# Author: Omi Shrestha

"""User-facing confirmation prompts raised by the controller."""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prompt:
    """A warning with a Cancel button and one action button.

    ``on_confirm`` is awaited when the user picks the action button; ``None``
    means the button only dismisses the prompt.
    """

    warning: str
    action: str
    on_confirm: Optional[Callable[[], Awaitable[object]]] = None

    def to_dict(self):
        return {"title": "Warning", "warning": self.warning, "buttons": ["Cancel", self.action]}


CONNECT_FIRST = "Please scan and connect a BLE device first"
ALREADY_CONNECTED = "User already connected to a device"


async def log_prompt(prompt: Prompt) -> bool:
    """Default prompt handler for headless use: log the warning and decline."""
    logger.warning("[PROMPT] %s (%s)", prompt.warning, prompt.action)
    return False


async def show_prompt(handler, prompt: Prompt):
    """Hand ``prompt`` to ``handler`` and run its action if confirmed."""
    confirmed = await handler(prompt)
    if confirmed and prompt.on_confirm is not None:
        await prompt.on_confirm()
    elif not confirmed:
        logger.debug("[PROMPT] Cancel pressed")
    return confirmed
