from __future__ import annotations

from collections import deque
from types import MappingProxyType
from typing import Deque, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from reclaimer.core.enums import AccountKind, EdgeKind, ReclaimReason
from reclaimer.core.errors import GraphError
from reclaimer.core.models import AccountNode, CleanupCandidate, CloseCriteria, Edge
from reclaimer.core.rent import rent_exempt_minimum
from reclaimer.core.dto import TokenAccountData


def is_empty_token_account(node: AccountNode) -> bool:
    """
    Zero tokens, no lamports above the rent-exempt floor, nothing frozen or delegated.
    """
    data = node.parsed
    if node.kind != AccountKind.TOKEN_ACCOUNT or not isinstance(data, TokenAccountData):
        return False
    if data.amount != 0 or data.is_frozen or data.delegated_amount > 0:
        return False
    return node.lamports <= rent_exempt_minimum(node.snapshot.data_len)


class AccountGraph:
    """
    Address-keyed account relationship graph.

    Nodes keep fetch order. Edges are indexed both ways at construction so
    forward and reverse traversal share the same O(V+E) cost. The graph is
    never mutated after __init__.
    """

    def __init__(self, nodes: Iterable[AccountNode], edges: Iterable[Edge] = ()) -> None:
        ordered = sorted(nodes, key=lambda n: n.fetch_index)
        self._nodes: Dict[str, AccountNode] = {}
        for n in ordered:
            self._nodes[n.address] = n

        self._edges: List[Edge] = []
        self._out: Dict[str, List[Edge]] = {}
        self._in: Dict[str, List[Edge]] = {}
        seen: Set[Tuple[str, str, EdgeKind]] = set()

        for e in edges:
            for endpoint in (e.source, e.target):
                if endpoint not in self._nodes:
                    raise GraphError(
                        f"{e.kind.value} edge {e.source} -> {e.target} references missing node {endpoint}"
                    )
            k = (e.source, e.target, e.kind)
            if k in seen:
                continue
            seen.add(k)
            self._edges.append(e)
            self._out.setdefault(e.source, []).append(e)
            self._in.setdefault(e.target, []).append(e)

    # -------------------------
    # Accessors
    # -------------------------

    @property
    def nodes(self) -> Mapping[str, AccountNode]:
        return MappingProxyType(self._nodes)

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return tuple(self._edges)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def get(self, address: str) -> Optional[AccountNode]:
        return self._nodes.get(address)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    def edges_from(self, address: str) -> Tuple[Edge, ...]:
        return tuple(self._out.get(address, ()))

    def edges_to(self, address: str) -> Tuple[Edge, ...]:
        return tuple(self._in.get(address, ()))

    # -------------------------
    # Traversal
    # -------------------------

    def find_reachable(self, root: str) -> List[str]:
        return self._bfs(root, self._out, forward=True)

    def find_reaching(self, target: str) -> List[str]:
        return self._bfs(target, self._in, forward=False)

    def _bfs(self, start: str, index: Dict[str, List[Edge]], forward: bool) -> List[str]:
        if start not in self._nodes:
            return []

        visited: Set[str] = {start}
        order: List[str] = [start]
        q: Deque[str] = deque([start])

        while q:
            current = q.popleft()
            for e in index.get(current, ()):
                nxt = e.target if forward else e.source
                if nxt in visited:
                    continue
                visited.add(nxt)
                order.append(nxt)
                q.append(nxt)

        return order

    # -------------------------
    # Queries
    # -------------------------

    def nodes_of_kind(self, kind: AccountKind) -> List[AccountNode]:
        return [n for n in self._nodes.values() if n.kind == kind]

    def token_accounts_for_mint(self, mint: str) -> List[AccountNode]:
        return [n for n in self.nodes_of_kind(AccountKind.TOKEN_ACCOUNT) if n.mint == mint]

    def token_accounts_for_wallet(self, wallet: str) -> List[AccountNode]:
        return [n for n in self.nodes_of_kind(AccountKind.TOKEN_ACCOUNT) if n.wallet == wallet]

    def group_by_mint(self) -> Dict[str, List[str]]:
        groups: Dict[str, List[str]] = {}
        for n in self.nodes_of_kind(AccountKind.TOKEN_ACCOUNT):
            groups.setdefault(n.mint or "", []).append(n.address)
        return groups

    def group_by_wallet(self) -> Dict[str, List[str]]:
        groups: Dict[str, List[str]] = {}
        for n in self.nodes_of_kind(AccountKind.TOKEN_ACCOUNT):
            groups.setdefault(n.wallet or "", []).append(n.address)
        return groups

    def total_lamports(self) -> int:
        return sum(n.lamports for n in self._nodes.values())

    def nodes_by_lamports(self) -> List[AccountNode]:
        return sorted(self._nodes.values(), key=lambda n: (-n.lamports, n.address))

    def find_closeable(self, criteria: Optional[CloseCriteria] = None) -> "ClosableView":
        return ClosableView(self, criteria or CloseCriteria())


class ClosableView:
    """
    Lazy view over closeable token accounts; every iter() starts over.
    """

    def __init__(self, graph: AccountGraph, criteria: CloseCriteria) -> None:
        self._graph = graph
        self._criteria = criteria

    def __iter__(self) -> Iterator[CleanupCandidate]:
        for node in self._graph.nodes_of_kind(AccountKind.TOKEN_ACCOUNT):
            reason = self._reason_for(node)
            if reason is None:
                continue
            yield CleanupCandidate(
                address=node.address,
                lamports=node.lamports,
                token_amount=node.token_amount,
                kind=node.kind,
                reason=reason,
                mint=node.mint,
                wallet=node.wallet,
            )

    def _reason_for(self, node: AccountNode) -> Optional[ReclaimReason]:
        data = node.parsed
        if not isinstance(data, TokenAccountData):
            return None
        if data.is_frozen or data.delegated_amount > 0:
            return None
        if is_empty_token_account(node):
            return ReclaimReason.EMPTY
        threshold = self._criteria.dust_threshold
        if threshold > 0 and data.amount < threshold:
            return ReclaimReason.BELOW_DUST_THRESHOLD
        if self._criteria.include_funded:
            return ReclaimReason.FORCED_BURN
        return None
