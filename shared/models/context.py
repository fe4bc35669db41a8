"""Pydantic models for the context handed to the auto-responder."""

from pydantic import BaseModel

from shared.clients.rag.models.VectorRecord import RecordKind

KIND_LABELS = {
    RecordKind.BIO: "Bio",
    RecordKind.MESSAGE: "Message",
}


class ContextItem(BaseModel):
    """A single retrieved record, reduced to what the prompt needs."""

    content: str
    kind: RecordKind
    relevance_score: float


class ContextBundle(BaseModel):
    """Ranked context for one auto-response request. Built per call, never cached."""

    items: list[ContextItem] = []

    def is_empty(self) -> bool:
        return not self.items

    def format_for_prompt(self) -> str:
        """Render one "Bio: ..." or "Message: ..." line per item, in ranked order."""
        return "\n".join(f"{KIND_LABELS[item.kind]}: {item.content}" for item in self.items)
