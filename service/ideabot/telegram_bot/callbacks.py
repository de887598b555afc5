"""
Inline keyboard callback data.

Callback data is decoded once, here, into a typed action. Canonical format:

    vote:up:<request_id>
    vote:down:<request_id>
    unvote:<request_id>
    pay:priority:<request_id>

Posts published by earlier bot versions still carry "vote:<id>" (an upvote),
"vote_up_<id>", "vote_down_<id>" and "pay_priority_<id>"; those decode to
the same actions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ideabot.errors import UnknownCallback
from ideabot.schemas import VoteDirection


class CallbackKind(str, Enum):
    VOTE = "vote"
    UNVOTE = "unvote"
    PAY = "pay"


@dataclass(frozen=True)
class CallbackAction:
    kind: CallbackKind
    request_id: int
    direction: Optional[VoteDirection] = None  # VOTE only
    payment_kind: Optional[str] = None  # PAY only

    def encode(self) -> str:
        if self.kind is CallbackKind.VOTE:
            return f"vote:{self.direction.value}:{self.request_id}"
        if self.kind is CallbackKind.PAY:
            return f"pay:{self.payment_kind}:{self.request_id}"
        return f"unvote:{self.request_id}"


def vote_action(request_id: int, direction: VoteDirection) -> CallbackAction:
    return CallbackAction(CallbackKind.VOTE, request_id, direction=direction)


def unvote_action(request_id: int) -> CallbackAction:
    return CallbackAction(CallbackKind.UNVOTE, request_id)


def pay_action(request_id: int, payment_kind: str = "priority") -> CallbackAction:
    return CallbackAction(CallbackKind.PAY, request_id, payment_kind=payment_kind)


_PATTERNS = [
    (re.compile(r"^vote:(up|down):(\d+)$"), lambda m: vote_action(int(m[2]), VoteDirection(m[1]))),
    (re.compile(r"^vote:(\d+)$"), lambda m: vote_action(int(m[1]), VoteDirection.UP)),
    (re.compile(r"^unvote:(\d+)$"), lambda m: unvote_action(int(m[1]))),
    (re.compile(r"^pay:([a-z]+):(\d+)$"), lambda m: pay_action(int(m[2]), m[1])),
    # legacy underscore forms
    (re.compile(r"^vote_(up|down)_(\d+)$"), lambda m: vote_action(int(m[2]), VoteDirection(m[1]))),
    (re.compile(r"^pay_([a-z]+)_(\d+)$"), lambda m: pay_action(int(m[2]), m[1])),
]


def parse_callback_data(data: Optional[str]) -> CallbackAction:
    """
    Decode callback data into a CallbackAction.

    Raises:
        UnknownCallback: data does not match any known action
    """
    if not data:
        raise UnknownCallback("Empty callback data")

    for pattern, build in _PATTERNS:
        match = pattern.match(data.strip())
        if match:
            return build(match)

    raise UnknownCallback(f"Unknown callback data: {data!r}")
