from __future__ import annotations

import struct
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from loguru import logger
from solders.pubkey import Pubkey

from reclaimer.config import settings
from reclaimer.core.dto import AccountSnapshot, MetadataData, MintData, TokenAccountData
from reclaimer.core.enums import AccountKind, EdgeKind
from reclaimer.core.errors import ParseError
from reclaimer.core.graph import AccountGraph
from reclaimer.core.models import AccountNode, Edge


AtaResolver = Callable[[str, str, str], Optional[str]]   # (wallet, mint, token program)
Parsed = Union[TokenAccountData, MintData, MetadataData, None]

_TOKEN_STATES = {0: "uninitialized", 1: "initialized", 2: "frozen"}

# token-2022 accounts carry the account type right after the base layout
_EXT_ACCOUNT_TYPE_MINT = 1
_EXT_ACCOUNT_TYPE_ACCOUNT = 2


class GraphBuilder:
    """
    Classifies fetched account snapshots and materializes an AccountGraph.

    - Dedupe: the last snapshot for an address wins, position is the first seen
    - Classification: system / token account / mint / metadata / program / unknown
    - Unclassifiable data becomes an Unknown node, never a failed build
    """

    def __init__(self, ata_resolver: Optional[AtaResolver] = None) -> None:
        self.ata_resolver = ata_resolver

    def build(self, snapshots: Iterable[AccountSnapshot]) -> AccountGraph:
        first_seen: Dict[str, int] = {}
        latest: Dict[str, AccountSnapshot] = {}

        for i, snap in enumerate(snapshots):
            if snap.address not in first_seen:
                first_seen[snap.address] = i
            latest[snap.address] = snap

        nodes = [self._make_node(latest[addr], idx) for addr, idx in first_seen.items()]
        present = {n.address for n in nodes}
        edges = self._infer_edges(nodes, present)

        graph = AccountGraph(nodes, edges)
        unknown = sum(1 for n in nodes if n.kind == AccountKind.UNKNOWN)
        logger.info(
            "Built account graph: {} nodes, {} edges ({} unknown)",
            len(graph),
            graph.edge_count,
            unknown,
        )
        return graph

    # -------------------------
    # Classification
    # -------------------------

    def _make_node(self, snap: AccountSnapshot, fetch_index: int) -> AccountNode:
        try:
            kind, parsed = self._classify(snap)
        except ParseError as exc:
            logger.debug("Unparseable account {}: {}", snap.address, exc)
            return AccountNode(
                snapshot=snap,
                kind=AccountKind.UNKNOWN,
                fetch_index=fetch_index,
                parse_error=str(exc),
            )

        is_ata = False
        if isinstance(parsed, TokenAccountData):
            is_ata = self._is_associated(snap, parsed)

        return AccountNode(
            snapshot=snap,
            kind=kind,
            fetch_index=fetch_index,
            parsed=parsed,
            is_associated=is_ata,
        )

    def _classify(self, snap: AccountSnapshot) -> Tuple[AccountKind, Parsed]:
        owner = snap.owner

        if owner == settings.SYSTEM_PROGRAM_ID:
            return AccountKind.SYSTEM_ACCOUNT, None

        if owner in settings.TOKEN_PROGRAM_IDS:
            if isinstance(snap.data, dict):
                return self._classify_token_json(snap.data)
            return self._classify_token_bytes(self._raw(snap))

        if owner == settings.METADATA_PROGRAM_ID:
            return AccountKind.METADATA_ACCOUNT, self._parse_metadata(snap)

        if snap.executable:
            return AccountKind.PROGRAM_ACCOUNT, None

        return AccountKind.UNKNOWN, None

    @staticmethod
    def _raw(snap: AccountSnapshot) -> bytes:
        if isinstance(snap.data, (bytes, bytearray)):
            return bytes(snap.data)
        raise ParseError(f"no decodable data (got {type(snap.data).__name__})")

    def _classify_token_bytes(self, data: bytes) -> Tuple[AccountKind, Parsed]:
        n = len(data)
        if n == settings.TOKEN_ACCOUNT_LEN or (
            n > settings.TOKEN_ACCOUNT_LEN and data[settings.TOKEN_ACCOUNT_LEN] == _EXT_ACCOUNT_TYPE_ACCOUNT
        ):
            return AccountKind.TOKEN_ACCOUNT, _unpack_token_account(data)
        if n == settings.MINT_LEN or (
            n > settings.TOKEN_ACCOUNT_LEN and data[settings.TOKEN_ACCOUNT_LEN] == _EXT_ACCOUNT_TYPE_MINT
        ):
            return AccountKind.MINT, _unpack_mint(data)
        raise ParseError(f"token program data of unexpected length {n}")

    @staticmethod
    def _classify_token_json(data: Dict[str, Any]) -> Tuple[AccountKind, Parsed]:
        parsed = data.get("parsed") if isinstance(data.get("parsed"), dict) else {}
        info = parsed.get("info") if isinstance(parsed.get("info"), dict) else {}
        typ = parsed.get("type")

        try:
            if typ == "account":
                token_amount = info.get("tokenAmount") or {}
                delegated = info.get("delegatedAmount") or {}
                return AccountKind.TOKEN_ACCOUNT, TokenAccountData(
                    mint=str(info["mint"]),
                    owner=str(info["owner"]),
                    amount=int(token_amount.get("amount", 0)),
                    delegate=info.get("delegate"),
                    delegated_amount=int(delegated.get("amount", 0)),
                    state=str(info.get("state", "initialized")),
                    is_native=bool(info.get("isNative", False)),
                    close_authority=info.get("closeAuthority"),
                )
            if typ == "mint":
                return AccountKind.MINT, MintData(
                    supply=int(info.get("supply", 0)),
                    decimals=int(info.get("decimals", 0)),
                    mint_authority=info.get("mintAuthority"),
                )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(f"malformed jsonParsed {typ}: {e}") from e

        raise ParseError(f"unsupported jsonParsed type: {typ!r}")

    def _parse_metadata(self, snap: AccountSnapshot) -> MetadataData:
        if isinstance(snap.data, dict):
            info = (snap.data.get("parsed") or {}).get("info") or {}
            if "mint" not in info:
                raise ParseError("metadata json without mint")
            return MetadataData(mint=str(info["mint"]))

        data = self._raw(snap)
        # key(1) | update_authority(32) | mint(32)
        if len(data) < 65 or data[0] != settings.METADATA_KEY_V1:
            raise ParseError("not a MetadataV1 account")
        return MetadataData(mint=_b58(data[33:65]))

    def _is_associated(self, snap: AccountSnapshot, data: TokenAccountData) -> bool:
        if self.ata_resolver is None:
            return False
        try:
            return self.ata_resolver(data.owner, data.mint, snap.owner) == snap.address
        except ValueError:
            return False

    # -------------------------
    # Edges
    # -------------------------

    def _infer_edges(self, nodes: List[AccountNode], present: set) -> List[Edge]:
        edges: List[Edge] = []

        def link(source: str, target: Optional[str], kind: EdgeKind) -> None:
            if not target or target == source:
                return
            if target not in present:
                logger.debug("Skipping {} edge {} -> {}: target not fetched", kind.value, source, target)
                return
            edges.append(Edge(source=source, target=target, kind=kind))

        for n in nodes:
            link(n.address, n.snapshot.owner, EdgeKind.OWNED_BY)

            if n.kind == AccountKind.TOKEN_ACCOUNT:
                link(n.address, n.wallet, EdgeKind.OWNED_BY)
                link(n.address, n.mint, EdgeKind.MINT_OF)
                if n.is_associated:
                    link(n.address, n.wallet, EdgeKind.ASSOCIATED_TOKEN_OF)
                    link(n.address, n.mint, EdgeKind.ASSOCIATED_TOKEN_OF)

            elif n.kind == AccountKind.METADATA_ACCOUNT:
                link(n.address, n.mint, EdgeKind.METADATA_OF)

        return edges


# -------------------------
# Binary layouts
# -------------------------

def _b58(raw: bytes) -> str:
    return str(Pubkey.from_bytes(raw))


def _coption_key(data: bytes, offset: int) -> Optional[str]:
    (tag,) = struct.unpack_from("<I", data, offset)
    return _b58(data[offset + 4: offset + 36]) if tag == 1 else None


def _unpack_token_account(data: bytes) -> TokenAccountData:
    try:
        amount, = struct.unpack_from("<Q", data, 64)
        state = _TOKEN_STATES.get(data[108])
        if state is None or state == "uninitialized":
            raise ParseError(f"token account state byte {data[108]} is not usable")
        native_tag, = struct.unpack_from("<I", data, 109)
        delegated_amount, = struct.unpack_from("<Q", data, 121)
        return TokenAccountData(
            mint=_b58(data[0:32]),
            owner=_b58(data[32:64]),
            amount=amount,
            delegate=_coption_key(data, 72),
            delegated_amount=delegated_amount,
            state=state,
            is_native=native_tag == 1,
            close_authority=_coption_key(data, 129),
        )
    except (struct.error, ValueError, IndexError) as e:
        raise ParseError(f"bad token account layout: {e}") from e


def _unpack_mint(data: bytes) -> MintData:
    try:
        supply, = struct.unpack_from("<Q", data, 36)
        return MintData(
            supply=supply,
            decimals=data[44],
            mint_authority=_coption_key(data, 0),
        )
    except (struct.error, ValueError, IndexError) as e:
        raise ParseError(f"bad mint layout: {e}") from e
