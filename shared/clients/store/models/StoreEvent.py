from typing import Any

from pydantic import BaseModel


class StoreEvent(BaseModel):
    """One change notification from the store's event stream.

    Attributes:
        event: Event type, "put" (replace) or "patch" (merge).
        path:  Absolute path of the changed node, e.g. "/workspaces/ws1/channels/c1/messages/m1".
        data:  New value at the path; None when the node was removed.
    """

    event: str
    path: str
    data: Any = None

    def get_segments(self) -> list[str]:
        return [segment for segment in self.path.split("/") if segment]
