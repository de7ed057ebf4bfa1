from __future__ import annotations

from .openai_compat import Message


def augment_messages(messages: list[Message], cot: str, *, prefill: str, postfill: str) -> list[Message]:
    """
    Splice the chain of thought into the conversation.

    The result always ends with the CoT as an assistant message followed by the
    postfill as a user message. When the conversation does not already end on a
    user turn, the prefill is added as one first so roles keep alternating.
    """
    out = list(messages)
    if not out or out[-1].role != "user":
        out.append(Message(role="user", content=prefill))
    out.append(Message(role="assistant", content=cot))
    out.append(Message(role="user", content=postfill))
    return out
