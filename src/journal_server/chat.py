"""The chat-turn protocol: append, read, infer, append, read."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import CollaboratorFailure, InvalidRequest
from .llm import DEFAULT_REPLY, InferenceClient, extract_reply
from .rooms import Role, RoomRegistry, TranscriptEntry

logger = logging.getLogger(__name__)

DEFAULT_ROOM = "default"

SYSTEM_PROMPT = (
    "You are a calm, supportive journaling companion. Reflect feelings, ask gentle "
    "follow-ups, avoid clinical diagnoses, and keep replies concise unless asked."
)


def _is_utf8(text: str) -> bool:
    # Lone surrogates survive JSON decoding but cannot be stored.
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


@dataclass
class ChatResult:
    reply: str
    messages: List[TranscriptEntry]


def build_prompt(system_prompt: str, entries: List[TranscriptEntry]) -> List[Dict[str, str]]:
    """System instruction first, then one turn per transcript entry."""
    prompt = [{"role": "system", "content": system_prompt}]
    prompt.extend({"role": e.role.value, "content": e.content} for e in entries)
    return prompt


class ChatService:
    """Runs one chat turn against a room.

    Steps run strictly in order with no fan-out. Appends that already
    committed stay committed if a later step fails. A failing inference call
    aborts the turn before the assistant entry is written; a response with an
    unrecognized shape is answered with ``fallback_reply`` instead.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        inference: InferenceClient,
        *,
        system_prompt: str = SYSTEM_PROMPT,
        default_room: str = DEFAULT_ROOM,
        fallback_reply: str = DEFAULT_REPLY,
    ) -> None:
        self.registry = registry
        self.inference = inference
        self.system_prompt = system_prompt
        self.default_room = default_room
        self.fallback_reply = fallback_reply

    def room_key(self, room_id: Any) -> str:
        key = self.default_room if room_id is None else str(room_id)
        if not _is_utf8(key):
            raise InvalidRequest("Invalid 'roomId'.")
        return key

    async def turn(self, room_id: Any, message: Any, user: Optional[str] = None) -> ChatResult:
        text = "" if message is None else str(message).strip()
        if not text:
            raise InvalidRequest("Missing 'message'.")
        if not _is_utf8(text):
            raise InvalidRequest("'message' must be valid UTF-8 text.")

        room = self.registry.resolve(self.room_key(room_id))
        logger.info("chat turn in room %r (user=%r)", room.room_id, user)

        await room.append(Role.USER, text)
        history = await room.read()

        prompt = build_prompt(self.system_prompt, history)
        try:
            resp = await self.inference.run(prompt)
        except Exception as e:
            logger.exception("inference failed for room %r", room.room_id)
            raise CollaboratorFailure() from e
        reply = extract_reply(resp, self.fallback_reply)

        await room.append(Role.ASSISTANT, reply)
        return ChatResult(reply=reply, messages=await room.read())

    async def history(self, room_id: Any) -> List[TranscriptEntry]:
        return await self.registry.resolve(self.room_key(room_id)).read()
