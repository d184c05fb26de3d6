"""
Rights-ownership chain model.

A work's rights chain is an ordered list of territory chains. Each territory
chain holds a forest of claimant nodes (publishers and composers) carrying four
independent percentage shares:

- mechanical / performance *ownership*: the legal share of the copyright
- mechanical / performance *collection*: the share of royalties collected

Nodes are kept in an arena keyed by a stable integer id. Every node records its
parent and ordered children and caches the totals of its own subtree, so an
edit only touches the path from the edited node up to its root.

The wire shape (`to_payload` / `from_payload`) is the one used by the portal's
chain editor: camelCase share keys, `publisherId` / `composerId`, nested
`children` and the four `total*` rollups per territory.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from concord.core import CoreError

WORLD = "World"

_TERRITORY_RE = re.compile(r"^[A-Z]{2}$")


class Category(Enum):
    """Role of a claimant on a work."""

    ORIGINAL_PUBLISHER = "Original Publisher"
    SUB_PUBLISHER = "Sub Publisher"
    ADMINISTRATOR = "Administrator"
    INCOME_PARTICIPANT = "Income Participant"
    COMPOSER = "Composer"
    AUTHOR = "Author"
    COMPOSER_AUTHOR = "Composer/Author"
    ARRANGER = "Arranger"
    ADAPTER = "Adapter"
    TRANSLATOR = "Translator"

    @property
    def is_publisher(self) -> bool:
        return self in _PUBLISHER_CATEGORIES


_PUBLISHER_CATEGORIES = frozenset(
    {
        Category.ORIGINAL_PUBLISHER,
        Category.SUB_PUBLISHER,
        Category.ADMINISTRATOR,
        Category.INCOME_PARTICIPANT,
    }
)


class ShareType(Enum):
    MECHANICAL_OWNERSHIP = "mechanical_ownership"
    PERFORMANCE_OWNERSHIP = "performance_ownership"
    MECHANICAL_COLLECTION = "mechanical_collection"
    PERFORMANCE_COLLECTION = "performance_collection"

    @property
    def is_ownership(self) -> bool:
        return self in (ShareType.MECHANICAL_OWNERSHIP, ShareType.PERFORMANCE_OWNERSHIP)

    @property
    def payload_key(self) -> str:
        """camelCase key used on the wire, e.g. `mechanicalOwnership`."""
        head, tail = self.value.split("_")
        return head + tail.capitalize()

    @property
    def total_key(self) -> str:
        """Wire key of the territory rollup, e.g. `totalMechanicalOwnership`."""
        head, tail = self.value.split("_")
        return "total" + head.capitalize() + tail.capitalize()


OWNERSHIP_SHARE_TYPES = (ShareType.MECHANICAL_OWNERSHIP, ShareType.PERFORMANCE_OWNERSHIP)


@dataclass(frozen=True, slots=True)
class Shares:
    """The four percentage shares of a node (or the totals of a subtree)."""

    mechanical_ownership: float = 0.0
    performance_ownership: float = 0.0
    mechanical_collection: float = 0.0
    performance_collection: float = 0.0

    def get(self, share_type: ShareType) -> float:
        return getattr(self, share_type.value)

    def as_dict(self) -> dict[ShareType, float]:
        return {share_type: self.get(share_type) for share_type in ShareType}

    def __add__(self, other: Shares) -> Shares:
        return Shares(*(self.get(t) + other.get(t) for t in ShareType))

    def __sub__(self, other: Shares) -> Shares:
        return Shares(*(self.get(t) - other.get(t) for t in ShareType))

    @classmethod
    def fsum(cls, items: Iterable[Shares]) -> Shares:
        """Sum shares component-wise with `math.fsum`."""
        items = list(items)
        return cls(*(math.fsum(item.get(t) for item in items) for t in ShareType))


ZERO_SHARES = Shares()


@dataclass(frozen=True, slots=True)
class PublisherClaim:
    publisher_id: str

    @property
    def key(self) -> str:
        return f"publisher:{self.publisher_id}"


@dataclass(frozen=True, slots=True)
class ComposerClaim:
    composer_id: str

    @property
    def key(self) -> str:
        return f"composer:{self.composer_id}"


Claimant = PublisherClaim | ComposerClaim


class StructuralErrorKind(Enum):
    DUPLICATE_TERRITORY = "duplicate_territory"
    INVALID_TERRITORY = "invalid_territory"
    INVALID_CLAIMANT = "invalid_claimant"
    INVALID_CATEGORY = "invalid_category"
    INVALID_SHARE = "invalid_share"
    CHILDREN_UNDER_WRITER = "children_under_writer"
    UNKNOWN_NODE = "unknown_node"
    MALFORMED = "malformed"


class StructuralChainError(CoreError):
    """A rights chain is structurally unusable (as opposed to merely invalid)."""

    def __init__(
        self,
        kind: StructuralErrorKind,
        message: str,
        *,
        territory: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.territory = territory

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "territory": self.territory}


def is_valid_territory(code: object) -> bool:
    return isinstance(code, str) and (code == WORLD or _TERRITORY_RE.match(code) is not None)


def check_share(value: object, *, name: str = "share") -> float:
    """Return `value` as a float percentage or raise INVALID_SHARE."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise StructuralChainError(
            StructuralErrorKind.INVALID_SHARE, f"{name} must be a number, got {value!r}"
        )
    value = float(value)
    if not math.isfinite(value) or value < 0.0 or value > 100.0:
        raise StructuralChainError(
            StructuralErrorKind.INVALID_SHARE, f"{name} must be within [0, 100], got {value!r}"
        )
    return value


def check_shares(shares: Shares) -> Shares:
    for share_type in ShareType:
        check_share(shares.get(share_type), name=share_type.value)
    return shares


def check_claimant_category(claimant: Claimant, category: Category) -> None:
    if not isinstance(claimant, (PublisherClaim, ComposerClaim)):
        raise StructuralChainError(
            StructuralErrorKind.INVALID_CLAIMANT, f"unsupported claimant {claimant!r}"
        )
    if isinstance(claimant, PublisherClaim) != category.is_publisher:
        raise StructuralChainError(
            StructuralErrorKind.INVALID_CATEGORY,
            f"category {category.value!r} does not fit claimant {claimant.key}",
        )


@dataclass(slots=True)
class RightsNode:
    """
    A single claimant in a territory's ownership tree.

    `shares` are the node's own shares. `subtree` caches the sum of the node's
    own shares and those of all its descendants; it is maintained by the owning
    TerritoryChain and must not be edited directly.
    """

    node_id: int
    claimant: Claimant
    category: Category
    shares: Shares
    controlled: bool = False
    contract_type: str | None = None
    parent_id: int | None = None
    child_ids: list[int] = field(default_factory=list)
    subtree: Shares = ZERO_SHARES

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class TerritoryChain:
    """
    The forest of rights nodes configured for one territory of a work.

    Rollups (`totals`) are derived from the root subtrees and are never set by
    hand. `recompute()` rebuilds every cached subtree total from scratch; edits
    through `add_node`, `update_node` and `remove_node` keep them current
    incrementally.
    """

    def __init__(self, territory: str) -> None:
        if not is_valid_territory(territory):
            raise StructuralChainError(
                StructuralErrorKind.INVALID_TERRITORY,
                f"territory must be an ISO-3166 alpha-2 code or {WORLD!r}, got {territory!r}",
                territory=territory if isinstance(territory, str) else None,
            )
        self.territory = territory
        self._nodes: dict[int, RightsNode] = {}
        self._root_ids: list[int] = []
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __repr__(self) -> str:
        return f"TerritoryChain({self.territory!r}, nodes={len(self._nodes)})"

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    def get(self, node_id: int) -> RightsNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise StructuralChainError(
                StructuralErrorKind.UNKNOWN_NODE,
                f"no node {node_id} in territory {self.territory}",
                territory=self.territory,
            )
        return node

    @property
    def roots(self) -> list[RightsNode]:
        return [self._nodes[node_id] for node_id in self._root_ids]

    def children(self, node_id: int) -> list[RightsNode]:
        return [self._nodes[child_id] for child_id in self.get(node_id).child_ids]

    def walk(self) -> Iterator[RightsNode]:
        """Yield all nodes depth-first, parents before children, in sibling order."""
        stack = list(reversed(self._root_ids))
        while stack:
            node = self._nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.child_ids))

    @property
    def totals(self) -> Shares:
        """The territory's four rollups."""
        return Shares.fsum(node.subtree for node in self.roots)

    def total(self, share_type: ShareType) -> float:
        return self.totals.get(share_type)

    # -------------------------------------------------------------------------
    # Editing
    # -------------------------------------------------------------------------

    def add_node(
        self,
        claimant: Claimant,
        category: Category,
        shares: Shares = ZERO_SHARES,
        *,
        parent_id: int | None = None,
        controlled: bool = False,
        contract_type: str | None = None,
    ) -> int:
        """Add a node as the last child of `parent_id` (or as a root) and return its id."""
        check_claimant_category(claimant, category)
        check_shares(shares)
        if parent_id is not None:
            parent = self.get(parent_id)
            if not parent.category.is_publisher:
                raise StructuralChainError(
                    StructuralErrorKind.CHILDREN_UNDER_WRITER,
                    f"node {parent_id} ({parent.category.value}) cannot have children",
                    territory=self.territory,
                )

        node_id = self._next_id
        self._next_id += 1
        node = RightsNode(
            node_id=node_id,
            claimant=claimant,
            category=category,
            shares=shares,
            controlled=controlled,
            contract_type=contract_type,
            parent_id=parent_id,
            subtree=shares,
        )
        self._nodes[node_id] = node
        if parent_id is None:
            self._root_ids.append(node_id)
        else:
            self._nodes[parent_id].child_ids.append(node_id)
            self._retotal(parent_id)
        return node_id

    def update_node(
        self,
        node_id: int,
        *,
        shares: Shares | None = None,
        controlled: bool | None = None,
        category: Category | None = None,
        claimant: Claimant | None = None,
        contract_type: str | None = None,
    ) -> RightsNode:
        """Change a node in place; only the path to its root is re-totalled."""
        node = self.get(node_id)
        new_claimant = claimant if claimant is not None else node.claimant
        new_category = category if category is not None else node.category
        check_claimant_category(new_claimant, new_category)
        if node.child_ids and not new_category.is_publisher:
            raise StructuralChainError(
                StructuralErrorKind.CHILDREN_UNDER_WRITER,
                f"node {node_id} has children and cannot become {new_category.value!r}",
                territory=self.territory,
            )
        if shares is not None:
            check_shares(shares)

        node.claimant = new_claimant
        node.category = new_category
        if controlled is not None:
            node.controlled = controlled
        if contract_type is not None:
            node.contract_type = contract_type
        if shares is not None and shares != node.shares:
            node.shares = shares
            self._retotal(node_id)
        return node

    def remove_node(self, node_id: int) -> int:
        """Remove a node and its whole subtree. Returns the number of nodes removed."""
        node = self.get(node_id)
        if node.parent_id is None:
            self._root_ids.remove(node_id)
        else:
            self._nodes[node.parent_id].child_ids.remove(node_id)
            self._retotal(node.parent_id)

        removed = 0
        stack = [node_id]
        while stack:
            current = self._nodes.pop(stack.pop())
            stack.extend(current.child_ids)
            removed += 1
        return removed

    def recompute(self) -> Shares:
        """
        Rebuild every cached subtree total by post-order traversal.

        Returns the fresh territory rollups. Node `shares` are not touched.
        """
        for node in reversed(list(self.walk())):
            node.subtree = Shares.fsum(
                [node.shares, *(self._nodes[c].subtree for c in node.child_ids)]
            )
        return self.totals

    def _retotal(self, node_id: int | None) -> None:
        """Re-sum subtree totals from `node_id` up to its root, the way `recompute` does."""
        while node_id is not None:
            node = self._nodes[node_id]
            node.subtree = Shares.fsum(
                [node.shares, *(self._nodes[c].subtree for c in node.child_ids)]
            )
            node_id = node.parent_id

    # -------------------------------------------------------------------------
    # Wire format
    # -------------------------------------------------------------------------

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> TerritoryChain:
        if not isinstance(payload, Mapping):
            raise StructuralChainError(
                StructuralErrorKind.MALFORMED, "territory entry must be an object"
            )
        chain = cls(payload.get("territory"))  # type: ignore[arg-type]
        children = payload.get("children") or []
        if not isinstance(children, list):
            raise StructuralChainError(
                StructuralErrorKind.MALFORMED,
                "children must be a list",
                territory=chain.territory,
            )
        try:
            for child in children:
                chain._add_payload_node(child, None)
        except StructuralChainError as e:
            if e.territory is None:
                e.territory = chain.territory
            raise
        return chain

    def _add_payload_node(self, payload: Any, parent_id: int | None) -> None:
        if not isinstance(payload, Mapping):
            raise StructuralChainError(StructuralErrorKind.MALFORMED, "node must be an object")

        claimant = parse_claimant(payload)
        raw_category = payload.get("category")
        try:
            category = Category(raw_category)
        except ValueError:
            raise StructuralChainError(
                StructuralErrorKind.INVALID_CATEGORY, f"unknown category {raw_category!r}"
            ) from None

        controlled = payload.get("controlled", False)
        if not isinstance(controlled, bool):
            raise StructuralChainError(
                StructuralErrorKind.MALFORMED, f"controlled must be a boolean, got {controlled!r}"
            )
        contract_type = payload.get("contractType")
        if contract_type is not None and not isinstance(contract_type, str):
            raise StructuralChainError(
                StructuralErrorKind.MALFORMED, "contractType must be a string"
            )

        shares = Shares(
            *(
                check_share(payload.get(t.payload_key, 0), name=t.payload_key)
                for t in ShareType
            )
        )
        node_id = self.add_node(
            claimant,
            category,
            shares,
            parent_id=parent_id,
            controlled=controlled,
            contract_type=contract_type or None,
        )

        children = payload.get("children") or []
        if not isinstance(children, list):
            raise StructuralChainError(StructuralErrorKind.MALFORMED, "children must be a list")
        for child in children:
            self._add_payload_node(child, node_id)

    def to_payload(self) -> dict[str, Any]:
        totals = self.totals
        payload: dict[str, Any] = {
            "territory": self.territory,
            "children": [self._node_payload(node) for node in self.roots],
        }
        for share_type in ShareType:
            payload[share_type.total_key] = totals.get(share_type)
        return payload

    def _node_payload(self, node: RightsNode) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if isinstance(node.claimant, PublisherClaim):
            payload["publisherId"] = node.claimant.publisher_id
        else:
            payload["composerId"] = node.claimant.composer_id
        payload["category"] = node.category.value
        payload["contractType"] = node.contract_type
        payload["controlled"] = node.controlled
        for share_type in ShareType:
            payload[share_type.payload_key] = node.shares.get(share_type)
        payload["children"] = [self._node_payload(child) for child in self.children(node.node_id)]
        return payload


def _claimant_ref(value: object) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise StructuralChainError(
            StructuralErrorKind.INVALID_CLAIMANT, f"claimant reference {value!r} is not an id"
        )
    return str(value)


def parse_claimant(payload: Mapping[str, Any]) -> Claimant:
    """Build the tagged claimant from `publisherId` / `composerId`, exactly one of which is set."""
    publisher_id = _claimant_ref(payload.get("publisherId"))
    composer_id = _claimant_ref(payload.get("composerId"))
    if publisher_id is not None and composer_id is not None:
        raise StructuralChainError(
            StructuralErrorKind.INVALID_CLAIMANT,
            "node references both a publisher and a composer",
        )
    if publisher_id is not None:
        return PublisherClaim(publisher_id)
    if composer_id is not None:
        return ComposerClaim(composer_id)
    raise StructuralChainError(
        StructuralErrorKind.INVALID_CLAIMANT,
        "node references neither a publisher nor a composer",
    )


class RightsChain:
    """
    A work's full rights chain: one TerritoryChain per configured territory.

    Territories not configured explicitly fall back to the `World` chain.
    """

    def __init__(self, territories: Iterable[TerritoryChain] = ()) -> None:
        self._territories: list[TerritoryChain] = []
        for chain in territories:
            self.add_territory(chain)

    def __iter__(self) -> Iterator[TerritoryChain]:
        return iter(self._territories)

    def __len__(self) -> int:
        return len(self._territories)

    @property
    def territories(self) -> list[str]:
        return [chain.territory for chain in self._territories]

    def add_territory(self, chain: TerritoryChain) -> TerritoryChain:
        if any(existing.territory == chain.territory for existing in self._territories):
            raise StructuralChainError(
                StructuralErrorKind.DUPLICATE_TERRITORY,
                f"territory {chain.territory} is listed more than once",
                territory=chain.territory,
            )
        self._territories.append(chain)
        return chain

    def remove_territory(self, territory: str) -> None:
        for i, chain in enumerate(self._territories):
            if chain.territory == territory:
                del self._territories[i]
                return
        raise StructuralChainError(
            StructuralErrorKind.UNKNOWN_NODE,
            f"territory {territory} is not configured",
            territory=territory,
        )

    def get(self, territory: str) -> TerritoryChain | None:
        for chain in self._territories:
            if chain.territory == territory:
                return chain
        return None

    def resolve(self, territory: str) -> TerritoryChain | None:
        """The chain governing `territory`: the explicit one, else `World`, else None."""
        chain = self.get(territory)
        if chain is None and territory != WORLD:
            chain = self.get(WORLD)
        return chain

    @classmethod
    def from_payload(cls, payload: Sequence[Any]) -> RightsChain:
        if not isinstance(payload, list):
            raise StructuralChainError(
                StructuralErrorKind.MALFORMED, "rights chain must be a list of territories"
            )
        return cls(TerritoryChain.from_payload(item) for item in payload)

    def to_payload(self) -> list[dict[str, Any]]:
        return [chain.to_payload() for chain in self._territories]
