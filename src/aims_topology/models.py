from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from .errors import ResponseValidationError


class Relationship(str, Enum):
    """The direction of an account relationship."""

    MANAGED = "managed"
    MANAGING = "managing"
    BILLS_TO = "bills_to"

    @classmethod
    def coerce(cls, value: "Relationship | str") -> "Relationship":
        """Accept either an enum member or its string value."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown relationship {value!r}") from None


def _require_id(payload: Any, kind: str) -> str:
    if not isinstance(payload, Mapping):
        raise ResponseValidationError(f"Expected a {kind} object, got {type(payload).__name__}")

    ident = payload.get("id")
    if not isinstance(ident, str) or not ident:
        raise ResponseValidationError(f"{kind} is missing a string 'id' field")

    return ident


@dataclass(frozen=True)
class TopologyNode:
    """One account within a relationship topology returned by the service."""

    id: str
    related: Mapping[Relationship, tuple["TopologyNode", ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def children(self, relationship: Relationship | str) -> tuple["TopologyNode", ...]:
        """Return the directly related accounts along an axis, or an empty tuple."""
        return self.related.get(Relationship.coerce(relationship), ())

    @classmethod
    def from_response(cls, payload: Any, relationship: Relationship | str) -> "TopologyNode":
        """Build a topology tree from a decoded ``topology`` response field.

        The root must carry a list under the requested axis. Nested nodes without
        that list are treated as leaves.
        """
        axis = Relationship.coerce(relationship)
        _require_id(payload, "topology root")

        if not isinstance(payload.get(axis.value), list):
            raise ResponseValidationError(
                f"Unexpected response format: topology root has no '{axis.value}' list"
            )

        return cls._parse(payload)

    @classmethod
    def _parse(cls, payload: Any) -> "TopologyNode":
        """Build the tree without recursion so nesting depth is bounded only by memory.

        Payloads are validated breadth-first, recording for each one the positions
        of its children, then nodes are built from the last position back so every
        child exists before its parent.
        """
        payloads = [payload]
        ids: list[str] = []
        links: list[dict[Relationship, range]] = []

        for current in payloads:
            ids.append(_require_id(current, "topology node"))

            positions: dict[Relationship, range] = {}
            for axis in Relationship:
                children = current.get(axis.value)
                if isinstance(children, list):
                    positions[axis] = range(len(payloads), len(payloads) + len(children))
                    payloads.extend(children)
            links.append(positions)

        nodes: list[TopologyNode] = [None] * len(payloads)  # type: ignore[list-item]
        for index in reversed(range(len(payloads))):
            related = {
                axis: tuple(nodes[child] for child in positions)
                for axis, positions in links[index].items()
            }
            nodes[index] = cls(id=ids[index], related=MappingProxyType(related))

        return nodes[0]


@dataclass(frozen=True)
class Account:
    """An account record as returned by the relationship listing endpoints."""

    id: str
    name: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_response(cls, payload: Any) -> "Account":
        ident = _require_id(payload, "account")
        return cls(id=ident, name=payload.get("name"), raw=dict(payload))


@dataclass(frozen=True)
class User:
    """A user record. Only ``id`` is interpreted; everything else is passed through."""

    id: str
    account_id: str | None = None
    name: str | None = None
    email: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_response(cls, payload: Any) -> "User":
        ident = _require_id(payload, "user")
        return cls(
            id=ident,
            account_id=payload.get("account_id"),
            name=payload.get("name"),
            email=payload.get("email"),
            raw=dict(payload),
        )
