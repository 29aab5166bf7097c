"""Interfaces the messaging core consumes from the mapping application."""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from geomessage_net.models import Geomessage


@runtime_checkable
class MapCollaborator(Protocol):
    """Coordinate services provided by the map."""

    def project_point(
        self, x: float, y: float, from_wkid: int, to_wkid: int
    ) -> tuple[float, float]:
        ...

    def point_to_mgrs(self, x: float, y: float, wkid: int) -> str:
        ...


@runtime_checkable
class Renderer(Protocol):
    """Draws Geomessages on the map.

    Renderers may also provide ``toggle_labels(show: bool)``; it is called
    when label display changes and skipped when absent.
    """

    def display_spot_report(
        self,
        x: float,
        y: float,
        wkid: int,
        existing_graphic_id: Optional[Any],
        message: Geomessage,
    ) -> Any:
        """Draw or move a spot report graphic and return its id."""

    def remove_spot_report_graphic(self, graphic_id: Any) -> None:
        ...

    def process_message(self, message: Geomessage) -> bool:
        ...

    def process_highlight(self, message_id: str, message_type: str, highlight: bool) -> bool:
        ...

    def process_remove(self, message_id: str, message_type: str) -> None:
        ...
