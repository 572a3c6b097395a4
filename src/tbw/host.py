# src/tbw/host.py
"""
Host node boundary.

The payout engine never talks to consensus, the wallet repository or the
transaction pool directly. Everything it needs from the node goes through
ChainHost; MemoryChainHost is a deterministic in-process implementation used
for tests and local dry runs.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from tbw.crypto.keys import public_key_from_passphrase, sign_message
from tbw.pay.fees import MilestoneConfig
from tbw.runtime.sqlite_db import _canon_json

Json = Dict[str, Any]
AppliedListener = Callable[["BlockEvent"], Any]
RevertedListener = Callable[[int], Any]


# ---------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------


@dataclass
class DelegateWallet:
    public_key: str
    username: str
    balance: int
    nonce: int = 0
    is_delegate: bool = True
    second_public_key: Optional[str] = None

    @property
    def has_second_signature(self) -> bool:
        return bool(self.second_public_key)


@dataclass(frozen=True, slots=True)
class BroadcastResult:
    accepted: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BlockEvent:
    height: int
    generator_public_key: str
    reward: int
    fees: int = 0
    donations: Dict[str, int] = field(default_factory=dict)
    timestamp: int = 0
    burned_fees: int = 0


# ---------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------


@runtime_checkable
class ChainHost(Protocol):
    """Everything the payout engine consumes from the node.

    subscribe() registers the engine's block-applied and block-reverted
    callbacks; a host serves one engine, so a later call replaces the earlier
    listeners. rollback_to(h) removes blocks >= h, leaving h - 1 as the tip,
    and does not emit block-reverted events.
    """

    def milestone_config(self) -> MilestoneConfig: ...

    def find_delegate_wallet(self, public_key: str) -> Optional[DelegateWallet]: ...

    def voters_with_balance(self, username: str) -> Dict[str, int]: ...

    def sign_and_build_transfer(
        self,
        recipients: Sequence[Tuple[str, int]],
        *,
        fee: int,
        memo: str,
        nonce: int,
        passphrase: str,
        second_passphrase: Optional[str] = None,
    ) -> Json: ...

    def broadcast(self, transactions: Sequence[Json]) -> BroadcastResult: ...

    def forged_transactions(self, ids: Iterable[str]) -> Dict[str, int]: ...

    def last_height(self) -> int: ...

    def subscribe(self, on_applied: AppliedListener, on_reverted: RevertedListener) -> None: ...

    def stop_block_queue(self) -> None: ...

    def rollback_to(self, height: int) -> None: ...

    def restart(self) -> None: ...


# ---------------------------------------------------------------------
# In-memory host
# ---------------------------------------------------------------------


def _transfer_id(body: Json) -> str:
    return hashlib.sha256(_canon_json(body).encode("utf-8")).hexdigest()


class MemoryChainHost:
    """In-process ChainHost.

    Broadcast outcomes are steerable per test: ids listed in `reject_ids` are
    rejected, `error_ids` maps ids to an error reason, and `fail_all` turns
    every broadcast into an error.
    """

    def __init__(self, *, milestone: Optional[MilestoneConfig] = None) -> None:
        self.milestone = milestone or MilestoneConfig(max_recipients_per_transfer=64, min_fee_rate=1, addon_bytes=0)
        self.wallets: Dict[str, DelegateWallet] = {}
        self.voters: Dict[str, Dict[str, int]] = {}
        self.pool: Dict[str, Json] = {}
        self.forged: Dict[str, int] = {}
        self.broadcasts: List[List[Json]] = []
        self.reject_ids: set = set()
        self.error_ids: Dict[str, str] = {}
        self.fail_all: Optional[str] = None
        self.height = 0
        self.blocks: Dict[int, BlockEvent] = {}
        self._on_applied: Optional[AppliedListener] = None
        self._on_reverted: Optional[RevertedListener] = None
        self.queue_stopped = False
        self.rollbacks: List[int] = []
        self.restarts = 0

    # ---- setup helpers ----

    def register_delegate(
        self,
        *,
        passphrase: str,
        username: str,
        balance: int,
        second_passphrase: Optional[str] = None,
        nonce: int = 0,
    ) -> DelegateWallet:
        wallet = DelegateWallet(
            public_key=public_key_from_passphrase(passphrase),
            username=username,
            balance=int(balance),
            nonce=int(nonce),
            second_public_key=public_key_from_passphrase(second_passphrase) if second_passphrase else None,
        )
        self.wallets[wallet.public_key] = wallet
        return wallet

    def set_voters(self, username: str, weights: Dict[str, int]) -> None:
        self.voters[username] = dict(weights)

    def apply_block(self, event: BlockEvent) -> None:
        """Append `event` as the new tip and notify the subscriber."""
        self.blocks[int(event.height)] = event
        self.height = int(event.height)
        if self._on_applied is not None:
            self._on_applied(event)

    def revert_block(self, height: int) -> None:
        """Drop blocks >= height as a reorg would and notify the subscriber."""
        h = int(height)
        self._drop_from(h)
        if self._on_reverted is not None:
            self._on_reverted(h)

    def _drop_from(self, height: int) -> None:
        self.blocks = {k: v for k, v in self.blocks.items() if k < height}
        self.height = min(self.height, height - 1)
        self.forged = {i: h for i, h in self.forged.items() if h < height}

    def forge_pool(self, height: int) -> List[str]:
        """Include every pooled transfer in block `height`."""
        ids = list(self.pool)
        for tx_id in ids:
            self.forged[tx_id] = int(height)
        self.pool.clear()
        self.height = max(self.height, int(height))
        return ids

    # ---- ChainHost ----

    def milestone_config(self) -> MilestoneConfig:
        return self.milestone

    def find_delegate_wallet(self, public_key: str) -> Optional[DelegateWallet]:
        return self.wallets.get(public_key)

    def voters_with_balance(self, username: str) -> Dict[str, int]:
        return {a: w for a, w in self.voters.get(username, {}).items() if int(w) > 0}

    def sign_and_build_transfer(
        self,
        recipients,
        *,
        fee,
        memo,
        nonce,
        passphrase,
        second_passphrase=None,
    ):
        body: Json = {
            "type": "transfer",
            "nonce": str(int(nonce)),
            "fee": str(int(fee)),
            "memo": memo or "",
            "senderPublicKey": public_key_from_passphrase(passphrase),
            "transfers": [{"recipientId": a, "amount": str(int(v))} for a, v in recipients],
        }
        message = _canon_json(body).encode("utf-8")
        body["signature"] = sign_message(message, passphrase)
        if second_passphrase:
            body["secondSignature"] = sign_message(message, second_passphrase)
        body["id"] = _transfer_id(body)
        return body

    def broadcast(self, transactions):
        batch = [dict(tx) for tx in transactions]
        self.broadcasts.append(batch)
        accepted: List[str] = []
        rejected: List[str] = []
        errors: Dict[str, str] = {}
        for tx in batch:
            tx_id = str(tx["id"])
            if self.fail_all is not None:
                errors[tx_id] = self.fail_all
            elif tx_id in self.error_ids:
                errors[tx_id] = self.error_ids[tx_id]
            elif tx_id in self.reject_ids:
                rejected.append(tx_id)
            else:
                self.pool[tx_id] = tx
                wallet = self.wallets.get(str(tx.get("senderPublicKey")))
                if wallet is not None:
                    wallet.nonce = max(wallet.nonce, int(tx["nonce"]))
                    spent = int(tx["fee"]) + sum(int(t["amount"]) for t in tx["transfers"])
                    wallet.balance -= spent
                accepted.append(tx_id)
        return BroadcastResult(accepted=accepted, rejected=rejected, errors=errors)

    def forged_transactions(self, ids):
        return {i: self.forged[i] for i in ids if i in self.forged}

    def last_height(self) -> int:
        return self.height

    def subscribe(self, on_applied, on_reverted) -> None:
        self._on_applied = on_applied
        self._on_reverted = on_reverted

    def stop_block_queue(self) -> None:
        self.queue_stopped = True

    def rollback_to(self, height: int) -> None:
        self.rollbacks.append(int(height))
        self._drop_from(max(1, int(height)))

    def restart(self) -> None:
        self.queue_stopped = False
        self.restarts += 1
