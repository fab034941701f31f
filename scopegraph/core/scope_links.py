"""
Hierarchy links — static parent mapping used for scope derivation.

When an actor has no direct scope rows for a type, access is derived from the
parent types listed here: a child row is visible when its foreign key points
at an accessible parent. The table is fixed at deploy time and checked for
cycles when this module is imported.

    location       → branch (branch_id)
    department     → vertical (vertical_id)
    sub_segment    → segment (segment_id)
    vehicle_model  → brand, segment, sub_segment
    variant        → vehicle_model, brand, segment, sub_segment
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class HierarchyLink:
    parent_type: str
    foreign_key: str


HIERARCHY_LINKS: dict[str, tuple[HierarchyLink, ...]] = {
    "location": (
        HierarchyLink("branch", "branch_id"),
    ),
    "department": (
        HierarchyLink("vertical", "vertical_id"),
    ),
    "sub_segment": (
        HierarchyLink("segment", "segment_id"),
    ),
    "vehicle_model": (
        HierarchyLink("brand", "brand_id"),
        HierarchyLink("segment", "segment_id"),
        HierarchyLink("sub_segment", "sub_segment_id"),
    ),
    "variant": (
        HierarchyLink("vehicle_model", "vehicle_model_id"),
        HierarchyLink("brand", "brand_id"),
        HierarchyLink("segment", "segment_id"),
        HierarchyLink("sub_segment", "sub_segment_id"),
    ),
}


def links_for(scope_type: str) -> tuple[HierarchyLink, ...]:
    return HIERARCHY_LINKS.get(scope_type, ())


def validate_links(links: dict[str, tuple[HierarchyLink, ...]]) -> None:
    """Raise ValueError if the parent mapping contains a cycle."""
    done: set[str] = set()

    def _visit(scope_type: str, path: tuple[str, ...]) -> None:
        if scope_type in path:
            cycle = " → ".join(path + (scope_type,))
            raise ValueError(f"hierarchy link cycle: {cycle}")
        if scope_type in done:
            return
        for link in links.get(scope_type, ()):
            _visit(link.parent_type, path + (scope_type,))
        done.add(scope_type)

    for scope_type in links:
        _visit(scope_type, ())


validate_links(HIERARCHY_LINKS)
