"""Typed ownership labels for engine resources.

Every container, volume and network the orchestrator creates carries a small
set of labels identifying it as managed and naming its owner. Inside the
codebase labels are a ``ResourceLabels`` value; they are flattened into
string key/value pairs only at the engine boundary.

Usage:
    labels = ResourceLabels(OwnerType.PROJECT, "demo")
    engine_labels = labels.to_labels()
    assert ResourceLabels.from_labels(engine_labels) == labels
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum, auto
from types import MappingProxyType

LABEL_PREFIX = "com.damp"


class LabelKey(StrEnum):
    """Reserved label keys written on managed resources."""

    MANAGED = f"{LABEL_PREFIX}.managed"
    OWNER_TYPE = f"{LABEL_PREFIX}.owner-type"
    OWNER_ID = f"{LABEL_PREFIX}.owner-id"


class OwnerType(StrEnum):
    """Kind of entity that owns a managed resource."""

    PROJECT = auto()
    SERVICE = auto()
    HELPER = auto()
    TUNNEL = auto()


_KEY_ALIASES: dict[str, LabelKey] = {
    "managed": LabelKey.MANAGED,
    "ownerType": LabelKey.OWNER_TYPE,
    "owner_type": LabelKey.OWNER_TYPE,
    "type": LabelKey.OWNER_TYPE,
    "ownerId": LabelKey.OWNER_ID,
    "owner_id": LabelKey.OWNER_ID,
}

MANAGED_VALUE = "true"


def resolve_label_key(key: str) -> str:
    """Map a short alias (``ownerId``, ``owner_type``...) to its full label key.

    Unknown keys pass through unchanged so callers can filter on extra labels.
    """
    if isinstance(key, LabelKey):
        return key.value
    alias = _KEY_ALIASES.get(key)
    return alias.value if alias is not None else key


@dataclass(frozen=True, slots=True)
class ResourceLabels:
    """Ownership labels of one managed resource.

    Attributes:
        owner_type: Kind of owning entity
        owner_id: Identifier of the owning entity
        extra: Additional non-reserved labels carried through unchanged
    """

    owner_type: OwnerType
    owner_id: str
    extra: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not self.owner_id:
            raise ValueError("owner_id must not be empty")
        reserved = {k.value for k in LabelKey}
        clash = reserved.intersection(self.extra)
        if clash:
            raise ValueError(f"extra labels may not override reserved keys: {sorted(clash)}")
        # Freeze a private copy so the value stays hashable-safe and immutable
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    def __hash__(self) -> int:
        return hash((self.owner_type, self.owner_id, tuple(sorted(self.extra.items()))))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceLabels):
            return NotImplemented
        return (
            self.owner_type == other.owner_type
            and self.owner_id == other.owner_id
            and dict(self.extra) == dict(other.extra)
        )

    def to_labels(self) -> dict[str, str]:
        """Flatten into engine label pairs."""
        labels = dict(self.extra)
        labels[LabelKey.MANAGED.value] = MANAGED_VALUE
        labels[LabelKey.OWNER_TYPE.value] = self.owner_type.value
        labels[LabelKey.OWNER_ID.value] = self.owner_id
        return labels

    def to_filters(self) -> list[str]:
        """Engine ``label`` filter expressions matching this owner."""
        return [
            f"{LabelKey.MANAGED.value}={MANAGED_VALUE}",
            f"{LabelKey.OWNER_TYPE.value}={self.owner_type.value}",
            f"{LabelKey.OWNER_ID.value}={self.owner_id}",
        ]

    @classmethod
    def from_labels(cls, labels: Mapping[str, str] | None) -> ResourceLabels | None:
        """Parse engine labels back into a typed value.

        Returns:
            The ownership labels, or None when the resource is not managed or
            the owner labels are missing/unknown.
        """
        if not labels or labels.get(LabelKey.MANAGED.value) != MANAGED_VALUE:
            return None
        owner_id = labels.get(LabelKey.OWNER_ID.value)
        try:
            owner_type = OwnerType(labels.get(LabelKey.OWNER_TYPE.value, ""))
        except ValueError:
            return None
        if not owner_id:
            return None
        reserved = {k.value for k in LabelKey}
        extra = {k: v for k, v in labels.items() if k not in reserved}
        return cls(owner_type=owner_type, owner_id=owner_id, extra=extra)


def managed_filter() -> list[str]:
    """Label filter matching every managed resource."""
    return [f"{LabelKey.MANAGED.value}={MANAGED_VALUE}"]


def label_filter(key: str, value: str, owner_type: OwnerType | str | None = None) -> list[str]:
    """Build engine label filters for a key/value lookup, optionally scoped by owner type."""
    filters = [*managed_filter(), f"{resolve_label_key(key)}={value}"]
    if owner_type is not None:
        filters.append(f"{LabelKey.OWNER_TYPE.value}={OwnerType(owner_type).value}")
    return filters
