"""Translation between local exercise rows and the provider's payload shape.

The mapper is stateless apart from its two tables.  Each table entry is a
``FieldMapping`` whose optional transform is referenced by name, so the tables
can live in YAML (see ``sync_config.yaml``) while the functions stay here.

Outbound (``to_remote``) drops every local field that has no mapping; the
provider has no place to store them.  Inbound (``to_local``) ignores unknown
remote fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from src.exercise_sync.base import LocalRecord, RemoteRecord, Tag

if TYPE_CHECKING:
    from src.exercise_sync.config_loader import SyncConfig


# ---------------------------------------------------------------------------
# Provider enumerations
# ---------------------------------------------------------------------------

RECORD_TYPES = (
    "general",
    "strength",
    "endurance",
    "timedFasterBetter",
    "timedLongerBetter",
    "timedStrength",
    "cardio",
)

EXERCISE_TAGS = ("arms", "shoulder", "chest", "back", "abs", "legs", "cardio", "fullBody", "none")

VIDEO_TYPES = ("youtube", "vimeo")

_CATEGORY_TO_RECORD_TYPE = {
    "strength": "strength",
    "cardio": "cardio",
    "endurance": "endurance",
    "timed": "timedFasterBetter",
}

_MUSCLE_TO_TAG = {
    "arms": "arms",
    "shoulders": "shoulder",
    "shoulder": "shoulder",
    "chest": "chest",
    "back": "back",
    "core": "abs",
    "abs": "abs",
    "legs": "legs",
    "cardio": "cardio",
}


# ---------------------------------------------------------------------------
# Value transforms
# ---------------------------------------------------------------------------


def record_type(category: Any) -> str:
    """Map a local category onto the provider's record type."""
    return _CATEGORY_TO_RECORD_TYPE.get(str(category or "").strip().lower(), "general")


def exercise_tag(muscle_groups: Any) -> str:
    """Provider tag from the first muscle group; ``none`` when there is none."""
    groups = as_list(muscle_groups)
    if not groups:
        return "none"
    return _MUSCLE_TO_TAG.get(groups[0].strip().lower(), "fullBody")


def video_type(url: Any) -> str | None:
    if not url:
        return None
    url = str(url)
    if "youtube.com" in url or "youtu.be" in url:
        return "youtube"
    if "vimeo.com" in url:
        return "vimeo"
    return None


def as_list(value: Any) -> list[str] | None:
    """Normalize an array column: scalars become one-element lists."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v]
    return [str(value)] if value else []


def as_text(value: Any) -> str | None:
    """Instructions arrive as a list of steps; store them newline separated."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return "\n".join(str(v) for v in value if v)
    return str(value)


def as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "")
    return bool(value)


def as_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "record_type": record_type,
    "exercise_tag": exercise_tag,
    "video_type": video_type,
    "as_list": as_list,
    "as_text": as_text,
    "as_bool": as_bool,
    "as_str": as_str,
}


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldMapping:
    """One mapping table entry; ``transform`` is a key of ``TRANSFORMS``."""

    local_field: str
    remote_field: str
    transform: str | None = None

    def apply(self, value: Any) -> Any:
        if self.transform is None:
            return value
        return TRANSFORMS[self.transform](value)


def _as_mapping(record: LocalRecord | RemoteRecord | dict[str, Any]) -> dict[str, Any]:
    if isinstance(record, (LocalRecord, RemoteRecord)):
        return record.as_dict()
    return record


class FieldMapper:
    """Applies the outbound and inbound mapping tables.

    Args:
        outbound: local → remote entries, applied in order.
        inbound:  remote → local entries.
    """

    def __init__(
        self,
        outbound: list[FieldMapping],
        inbound: list[FieldMapping],
    ) -> None:
        for entry in (*outbound, *inbound):
            if entry.transform is not None and entry.transform not in TRANSFORMS:
                raise ValueError(f"Unknown transform {entry.transform!r} for {entry}")
        self.outbound = tuple(outbound)
        self.inbound = tuple(inbound)

    @classmethod
    def from_config(cls, config: "SyncConfig") -> "FieldMapper":
        return cls(outbound=config.outbound, inbound=config.inbound)

    def to_remote(self, local: LocalRecord | dict[str, Any]) -> dict[str, Any]:
        """Build the provider payload for a local record, including ``tags``."""
        source = _as_mapping(local)
        payload: dict[str, Any] = {}
        for entry in self.outbound:
            value = source.get(entry.local_field)
            if value is None:
                continue
            transformed = entry.apply(value)
            if transformed is not None:
                payload[entry.remote_field] = transformed
        payload["tags"] = [tag.as_dict() for tag in self.build_tags(source)]
        return payload

    def to_local(self, remote: RemoteRecord | dict[str, Any]) -> dict[str, Any]:
        """Map a remote record onto local columns. Unknown remote fields are ignored."""
        source = _as_mapping(remote)
        mapped: dict[str, Any] = {}
        for entry in self.inbound:
            value = source.get(entry.remote_field)
            if value is None:
                continue
            transformed = entry.apply(value)
            if transformed is not None:
                mapped[entry.local_field] = transformed
        return mapped

    def unmapped(self, remote: RemoteRecord | dict[str, Any]) -> dict[str, Any]:
        """Remote fields the inbound table does not cover (kept as ``extra``)."""
        source = _as_mapping(remote)
        known = {entry.remote_field for entry in self.inbound} | {"created_at", "updated_at"}
        return {k: v for k, v in source.items() if k not in known and v is not None}

    @staticmethod
    def build_tags(local: LocalRecord | dict[str, Any]) -> list[Tag]:
        """Expand muscle groups, equipment, difficulty and category into flat tags."""
        source = _as_mapping(local)
        tags: list[Tag] = []

        for muscle in as_list(source.get("muscle_groups")) or []:
            tags.append(Tag("muscle", muscle))

        for item in as_list(source.get("equipment")) or []:
            tags.append(Tag("equipment", item))

        difficulty = source.get("difficulty_level") or source.get("difficulty")
        if difficulty:
            tags.append(Tag("difficulty", str(difficulty)))

        if source.get("category"):
            tags.append(Tag("category", str(source["category"])))

        return tags
