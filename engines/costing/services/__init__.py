"""
Costbook Costing Engine — Application Service
===============================================
Orchestrates movement requests → strategy → store → transaction log.

Per operation:
    1. Policies (input validation, before any lock); claim the
       transaction id in the log
    2. Resolve the product's method ONCE (nothing cached across calls)
    3. Product method guard (one method per product at a time)
    4. Pair write lock(s), in key order
    5. Scratch copy of the pair state; changeover if the method moved
    6. Strategy apply on the scratch copy
    7. Repository commit (ONE batch)
    8. Append to the log, swap scratch into the store, note checkpoint

Any failure before step 8 leaves the live state untouched and the
operation returns a REJECTED outcome. Errors never cross the service
boundary except programming errors (TypeError, unknown transaction id,
naive timestamps).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from core.commands.rejection import RejectionReason
from core.replay.errors import ReplayError
from core.time.clock import Clock, SystemClock, ensure_aware
from engines.costing.configuration import (
    CostingMethod,
    CostingSettings,
    MethodResolver,
    resolve_or_raise,
)
from engines.costing.errors import (
    CostingError,
    InvalidCostError,
    InvalidQuantityError,
    PersistenceError,
)
from engines.costing.locks import PairLockRegistry, ProductMethodGuard
from engines.costing.lot_engine import Lot
from engines.costing.numeric import ZERO, quantize_cost, to_decimal
from engines.costing.outcomes import (
    CostingOutcome,
    OutcomeStatus,
    RecalculationOutcome,
    ValuationOutcome,
)
from engines.costing.persistence import (
    CommitBatch,
    CostingRepository,
    InMemoryCostingRepository,
)
from engines.costing.policies import (
    first_rejection,
    non_negative_cost_policy,
    non_zero_adjustment_policy,
    positive_quantity_policy,
    same_location_transfer_policy,
)
from engines.costing.recalculation import CheckpointStore, Recalculator
from engines.costing.state import CostingStateStore, PairKey, PairState
from engines.costing.strategies import strategy_for
from engines.costing.transactions import (
    Movement,
    Transaction,
    TransactionLog,
    TransactionType,
)

logger = logging.getLogger("costbook.costing")


def _touched_lots(transactions: Iterable[Transaction]) -> frozenset:
    touched = set()
    for tx in transactions:
        if tx.created_lot_id is not None:
            touched.add(tx.created_lot_id)
        touched.update(c.lot_id for c in tx.consumed_lots if c.lot_id is not None)
    return frozenset(touched)


class CostingService:
    """
    Entry point of the costing engine.

    Dependencies are injected:
        resolver   — MethodResolver (product → method)
        settings   — CostingSettings
        repository — CostingRepository (transactional store)
        clock      — Clock (created_at / recalculated_at stamps)
    """

    def __init__(
        self,
        resolver: MethodResolver,
        settings: Optional[CostingSettings] = None,
        repository: Optional[CostingRepository] = None,
        clock: Optional[Clock] = None,
    ):
        self._resolver = resolver
        self._settings = settings or CostingSettings()
        self._repository = repository if repository is not None else InMemoryCostingRepository()
        self._clock = clock or SystemClock()

        self._states = CostingStateStore(self._settings)
        self._log = TransactionLog()
        self._locks = PairLockRegistry()
        self._guard = ProductMethodGuard()
        self._checkpoints = CheckpointStore(self._settings.checkpoint_interval)
        self._recalculator = Recalculator(self._settings, self._checkpoints)

    @classmethod
    def from_django_settings(cls, resolver: MethodResolver, clock: Optional[Clock] = None) -> "CostingService":
        """Wire settings.COSTBOOK_COSTING and the Django repository."""
        from engines.costing.persistence.django_store import DjangoCostingRepository

        settings = CostingSettings.from_django_settings()
        return cls(
            resolver=resolver,
            settings=settings,
            repository=DjangoCostingRepository(cost_places=settings.cost_places),
            clock=clock,
        )

    @property
    def settings(self) -> CostingSettings:
        return self._settings

    # ══════════════════════════════════════════════════════════
    # MOVEMENTS
    # ══════════════════════════════════════════════════════════

    def receive(
        self,
        product_id: str,
        warehouse_id: str,
        quantity,
        unit_cost,
        reference: str,
        occurred_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> CostingOutcome:
        """Purchase or production receipt at a known unit cost."""
        quantity = to_decimal(quantity, "quantity")
        unit_cost = to_decimal(unit_cost, "unit_cost")
        rejection = first_rejection(
            positive_quantity_policy(quantity),
            non_negative_cost_policy(unit_cost),
        )
        return self._record(
            TransactionType.RECEIVE, product_id, warehouse_id, quantity, unit_cost,
            reference, occurred_at, actor_id, transaction_id, rejection,
        )

    def issue(
        self,
        product_id: str,
        warehouse_id: str,
        quantity,
        reference: str,
        occurred_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> CostingOutcome:
        """Sale or consumption. total_cost of the result is the COGS."""
        quantity = to_decimal(quantity, "quantity")
        rejection = positive_quantity_policy(quantity)
        return self._record(
            TransactionType.ISSUE, product_id, warehouse_id, -quantity, None,
            reference, occurred_at, actor_id, transaction_id, rejection,
        )

    def adjust(
        self,
        product_id: str,
        warehouse_id: str,
        quantity,
        reference: str,
        unit_cost=None,
        occurred_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> CostingOutcome:
        """
        Signed stock adjustment.

        Positive: like a receipt, at unit_cost or the current carrying
        cost. Negative: like an issue, oldest lots first under FIFO.
        """
        quantity = to_decimal(quantity, "quantity")
        unit_cost = None if unit_cost is None else to_decimal(unit_cost, "unit_cost")
        rejection = first_rejection(
            non_zero_adjustment_policy(quantity),
            non_negative_cost_policy(unit_cost),
        )
        return self._record(
            TransactionType.ADJUST, product_id, warehouse_id, quantity, unit_cost,
            reference, occurred_at, actor_id, transaction_id, rejection,
        )

    def return_in(
        self,
        product_id: str,
        warehouse_id: str,
        quantity,
        reference: str,
        unit_cost=None,
        occurred_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> CostingOutcome:
        """Customer return. Without unit_cost, stock comes back at the carrying cost."""
        quantity = to_decimal(quantity, "quantity")
        unit_cost = None if unit_cost is None else to_decimal(unit_cost, "unit_cost")
        rejection = first_rejection(
            positive_quantity_policy(quantity),
            non_negative_cost_policy(unit_cost),
        )
        return self._record(
            TransactionType.RETURN_IN, product_id, warehouse_id, quantity, unit_cost,
            reference, occurred_at, actor_id, transaction_id, rejection,
        )

    def return_out(
        self,
        product_id: str,
        warehouse_id: str,
        quantity,
        reference: str,
        occurred_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> CostingOutcome:
        """Return to supplier; costed exactly like an issue."""
        quantity = to_decimal(quantity, "quantity")
        rejection = positive_quantity_policy(quantity)
        return self._record(
            TransactionType.RETURN_OUT, product_id, warehouse_id, -quantity, None,
            reference, occurred_at, actor_id, transaction_id, rejection,
        )

    def transfer(
        self,
        product_id: str,
        source_warehouse_id: str,
        destination_warehouse_id: str,
        quantity,
        reference: str,
        occurred_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> CostingOutcome:
        """
        Move stock between warehouses at its source cost.

        TRANSFER_OUT is costed like an issue at the source; its exact
        total enters the destination as TRANSFER_IN. Both pairs are
        locked in key order and committed in one batch.
        """
        quantity = to_decimal(quantity, "quantity")
        rejection = first_rejection(
            positive_quantity_policy(quantity),
            same_location_transfer_policy(source_warehouse_id, destination_warehouse_id),
        )
        if rejection is not None:
            return self._rejected("transfer", product_id, rejection)

        try:
            method = resolve_or_raise(self._resolver, product_id)
        except CostingError as exc:
            return self._rejected("transfer", product_id, exc.to_rejection())

        now = self._clock.now_utc()
        occurred_at = ensure_aware(occurred_at, "occurred_at") if occurred_at is not None else now
        source = PairKey(product_id, source_warehouse_id)
        destination = PairKey(product_id, destination_warehouse_id)
        transfer_id = str(uuid.uuid4())
        strategy = strategy_for(method)

        try:
            with self._guard.hold(product_id, method), self._locks.write(source, destination):
                src_state, src_converted = self._scratch(source, method, occurred_at)
                dst_state, dst_converted = self._scratch(destination, method, occurred_at)

                out_movement = Movement(
                    transaction_id=str(uuid.uuid4()),
                    sequence=self._log.next_sequence(),
                    product_id=product_id,
                    warehouse_id=source_warehouse_id,
                    transaction_type=TransactionType.TRANSFER_OUT,
                    quantity=-quantity,
                    unit_cost=None,
                    reference=reference,
                    occurred_at=occurred_at,
                    created_at=now,
                    actor_id=actor_id,
                    transfer_id=transfer_id,
                )
                tx_out = strategy.apply(src_state, out_movement, self._allow_negative(product_id))

                in_movement = Movement(
                    transaction_id=str(uuid.uuid4()),
                    sequence=self._log.next_sequence(),
                    product_id=product_id,
                    warehouse_id=destination_warehouse_id,
                    transaction_type=TransactionType.TRANSFER_IN,
                    quantity=quantity,
                    unit_cost=quantize_cost(tx_out.total_cost / quantity, self._settings.cost_places),
                    reference=reference,
                    occurred_at=occurred_at,
                    created_at=now,
                    actor_id=actor_id,
                    transfer_id=transfer_id,
                    total_cost=tx_out.total_cost,
                )
                tx_in = strategy.apply(dst_state, in_movement, False)

                self._commit(CommitBatch(
                    transactions=(tx_out, tx_in),
                    states=(src_state.snapshot(), dst_state.snapshot()),
                    touched_lots=(
                        None if src_converted or dst_converted
                        else _touched_lots((tx_out, tx_in))
                    ),
                    inserted=frozenset((tx_out.transaction_id, tx_in.transaction_id)),
                ))
                self._publish(src_state, tx_out)
                self._publish(dst_state, tx_in)
        except CostingError as exc:
            return self._rejected("transfer", product_id, exc.to_rejection(), method)

        logger.debug(
            f"Transferred {quantity} of {product_id} "
            f"{source_warehouse_id} → {destination_warehouse_id} at {tx_out.total_cost}."
        )
        return CostingOutcome.accepted(tx_out, tx_in)

    # ── Shared movement path ──────────────────────────────────

    def _record(
        self,
        kind: TransactionType,
        product_id: str,
        warehouse_id: str,
        quantity: Decimal,
        unit_cost: Optional[Decimal],
        reference: str,
        occurred_at: Optional[datetime],
        actor_id: Optional[str],
        transaction_id: Optional[str],
        rejection: Optional[RejectionReason],
    ) -> CostingOutcome:
        operation = kind.value.lower()
        if rejection is not None:
            return self._rejected(operation, product_id, rejection)
        transaction_id = transaction_id or str(uuid.uuid4())
        self._log.reserve(transaction_id)
        try:
            return self._record_reserved(kind, product_id, warehouse_id, quantity, unit_cost,
                                         reference, occurred_at, actor_id, transaction_id)
        finally:
            self._log.release(transaction_id)

    def _record_reserved(
        self,
        kind: TransactionType,
        product_id: str,
        warehouse_id: str,
        quantity: Decimal,
        unit_cost: Optional[Decimal],
        reference: str,
        occurred_at: Optional[datetime],
        actor_id: Optional[str],
        transaction_id: str,
    ) -> CostingOutcome:
        """Second half of _record, run while transaction_id is claimed."""
        operation = kind.value.lower()
        try:
            method = resolve_or_raise(self._resolver, product_id)
        except CostingError as exc:
            return self._rejected(operation, product_id, exc.to_rejection())

        now = self._clock.now_utc()
        occurred_at = ensure_aware(occurred_at, "occurred_at") if occurred_at is not None else now
        key = PairKey(product_id, warehouse_id)

        try:
            with self._guard.hold(product_id, method), self._locks.write(key):
                state, converted = self._scratch(key, method, occurred_at)
                movement = Movement(
                    transaction_id=transaction_id,
                    sequence=self._log.next_sequence(),
                    product_id=product_id,
                    warehouse_id=warehouse_id,
                    transaction_type=kind,
                    quantity=quantity,
                    unit_cost=unit_cost,
                    reference=reference,
                    occurred_at=occurred_at,
                    created_at=now,
                    actor_id=actor_id,
                )
                tx = strategy_for(method).apply(state, movement, self._allow_negative(product_id))
                self._commit(CommitBatch(
                    transactions=(tx,),
                    states=(state.snapshot(),),
                    touched_lots=None if converted else _touched_lots((tx,)),
                    inserted=frozenset((tx.transaction_id,)),
                ))
                self._publish(state, tx)
        except CostingError as exc:
            return self._rejected(operation, product_id, exc.to_rejection(), method)

        logger.debug(
            f"{kind.value} {tx.quantity} of {key} under {method.value}: "
            f"total_cost={tx.total_cost}, value_after={tx.value_after}."
        )
        return CostingOutcome.accepted(tx)

    def _scratch(self, key: PairKey, method: CostingMethod, at: datetime) -> Tuple[PairState, bool]:
        """
        Working copy of the pair state, changed over to method if the
        product's configuration moved since its last operation.
        """
        live = self._states.get(key)
        if live is None:
            return PairState.empty(key, method, self._settings), False
        state = PairState.restore(live.snapshot(), self._settings)
        converted = False
        if state.method != method:
            converted = state.convert(method, at=at, sequence=self._log.next_sequence())
            logger.info(
                f"Method changeover for {key}: {live.method.value} → {method.value} "
                f"carrying {state.quantity_on_hand()} units at {state.total_value()}."
            )
        return state, converted

    def _publish(self, state: PairState, tx: Transaction) -> None:
        """Make a committed operation visible. Caller holds the pair lock."""
        self._log.append(tx)
        self._states.put(state)
        out_of_order = self._checkpoints.note_applied(state.key, tx.sort_key, state.snapshot)
        if out_of_order:
            logger.warning(
                f"Back-dated {tx.transaction_type.value} {tx.transaction_id} for "
                f"{state.key} at {tx.occurred_at.isoformat()}; later costs are stale "
                f"until recalculated from {self._checkpoints.stale_from(state.key).isoformat()}."
            )

    def _commit(self, batch: CommitBatch) -> None:
        try:
            self._repository.commit(batch)
        except (CostingError, ReplayError):
            raise
        except Exception as exc:
            logger.error(f"Repository commit failed: {type(exc).__name__}: {exc}")
            raise PersistenceError(
                f"Store refused the commit: {exc}",
                details={"error": type(exc).__name__},
            ) from exc

    def _allow_negative(self, product_id: str) -> bool:
        return self._settings.negative_stock_allowed(product_id)

    def _rejected(
        self,
        operation: str,
        product_id: str,
        reason: RejectionReason,
        method: Optional[CostingMethod] = None,
    ) -> CostingOutcome:
        logger.warning(
            f"Rejected {operation} for product {product_id}: "
            f"{reason.code}: {reason.message}"
        )
        return CostingOutcome.rejected(reason, method)

    # ══════════════════════════════════════════════════════════
    # VALUATION
    # ══════════════════════════════════════════════════════════

    def valuation(self, product_id: str, warehouse_id: str) -> ValuationOutcome:
        """Total value of the pair's stock, from a consistent snapshot."""
        key = PairKey(product_id, warehouse_id)
        with self._locks.read(key):
            state = self._states.get(key)
            if state is not None:
                return ValuationOutcome(
                    status=OutcomeStatus.ACCEPTED,
                    product_id=product_id,
                    warehouse_id=warehouse_id,
                    total_value=strategy_for(state.method).valuation(state),
                    quantity_on_hand=state.quantity_on_hand(),
                    method=state.method,
                )

        try:
            method = resolve_or_raise(self._resolver, product_id)
        except CostingError as exc:
            reason = exc.to_rejection()
            logger.warning(f"Rejected valuation for product {product_id}: {reason.code}")
            return ValuationOutcome(
                status=OutcomeStatus.REJECTED,
                product_id=product_id,
                warehouse_id=warehouse_id,
                reason=reason,
            )
        return ValuationOutcome(
            status=OutcomeStatus.ACCEPTED,
            product_id=product_id,
            warehouse_id=warehouse_id,
            total_value=ZERO,
            quantity_on_hand=ZERO,
            method=method,
        )

    # ══════════════════════════════════════════════════════════
    # RECALCULATION
    # ══════════════════════════════════════════════════════════

    def recalculate(self, product_id: str, warehouse_id: str, from_timestamp: datetime) -> RecalculationOutcome:
        """
        Re-derive costs of the pair from from_timestamp onward.

        The pair's write lock is held for the whole snapshot, replay
        and commit. On divergence nothing is changed.
        """
        from_timestamp = ensure_aware(from_timestamp, "from_timestamp")
        key = PairKey(product_id, warehouse_id)
        return self._recalculate(key, from_timestamp, correction=None, visited=set())

    def correct(
        self,
        transaction_id: str,
        quantity=None,
        unit_cost=None,
    ) -> RecalculationOutcome:
        """
        Correct the quantity and/or unit cost of a recorded movement and
        recalculate its pair from that movement onward, atomically.

        quantity is the magnitude for directional types and the signed
        change for ADJUST. unit_cost applies to inbound movements only.
        Raises KeyError for an unknown transaction.
        """
        original = self._log.get(transaction_id)
        if original is None:
            raise KeyError(f"Unknown transaction {transaction_id}.")
        key = PairKey(original.product_id, original.warehouse_id)

        def derive(current: Transaction) -> Transaction:
            return self._corrected_inputs(current, quantity, unit_cost)

        return self._recalculate(
            key, original.occurred_at, correction=(transaction_id, derive), visited=set(),
        )

    def _corrected_inputs(self, original: Transaction, quantity, unit_cost) -> Transaction:
        kind = original.transaction_type
        new_quantity = original.quantity
        new_unit_cost = original.input_unit_cost

        if quantity is not None:
            quantity = to_decimal(quantity, "quantity")
            if original.transfer_id is not None:
                raise InvalidQuantityError(
                    "Transfer quantities cannot be corrected on one side only.",
                    details={"transaction_id": original.transaction_id},
                )
            if kind == TransactionType.ADJUST:
                if quantity == 0:
                    raise InvalidQuantityError(
                        "Adjustment quantity must be non-zero.",
                        details={"quantity": quantity},
                    )
                new_quantity = quantity
            else:
                if quantity <= 0:
                    raise InvalidQuantityError(
                        f"Quantity must be positive, got {quantity}.",
                        details={"quantity": quantity},
                    )
                new_quantity = quantity if kind.is_inbound else -quantity

        if unit_cost is not None:
            unit_cost = to_decimal(unit_cost, "unit_cost")
            if kind.is_outbound or kind == TransactionType.TRANSFER_IN:
                raise InvalidCostError(
                    f"The cost of a {kind.value} is derived, not entered.",
                    details={"transaction_id": original.transaction_id},
                )
            if unit_cost < 0:
                raise InvalidCostError(
                    f"unit_cost cannot be negative, got {unit_cost}.",
                    details={"unit_cost": unit_cost},
                )
            new_unit_cost = unit_cost

        return replace(
            original,
            quantity=new_quantity,
            input_unit_cost=new_unit_cost,
            revision=original.revision + 1,
        )

    def _recalculate(
        self,
        key: PairKey,
        from_timestamp: datetime,
        correction: Optional[Tuple[str, Callable[[Transaction], Transaction]]],
        visited: Set[str],
    ) -> RecalculationOutcome:
        """
        Replay the pair from from_timestamp under its write lock.

        correction names a transaction and derives its next revision
        from the record current at lock time.
        """
        now = self._clock.now_utc()

        try:
            with self._locks.write(key):
                corrected: Optional[Transaction] = None
                if correction is not None:
                    transaction_id, derive = correction
                    corrected = derive(self._log.get(transaction_id))
                history = self._log.for_pair(*key)
                if corrected is not None:
                    history = [
                        corrected if tx.transaction_id == corrected.transaction_id else tx
                        for tx in history
                    ]
                result = self._recalculator.replay(
                    key, from_timestamp, history, now,
                    fallback_state=self._states.get(key),
                )

                rewritten: Dict[str, Transaction] = {tx.transaction_id: tx for tx in result.changed}
                if corrected is not None:
                    for tx in result.replayed:
                        if tx.transaction_id == corrected.transaction_id:
                            rewritten[tx.transaction_id] = tx
                final_state = result.final_state

                self._commit(CommitBatch(
                    transactions=tuple(sorted(rewritten.values(), key=lambda tx: tx.sort_key)),
                    states=(final_state.snapshot(),) if final_state is not None else (),
                    touched_lots=None,
                ))

                for tx in rewritten.values():
                    if corrected is not None and tx.transaction_id == corrected.transaction_id:
                        self._log.apply_correction(tx)
                    else:
                        self._log.replace_costs(tx)
                if final_state is not None:
                    self._states.put(final_state)
                self._checkpoints.commit_replay(
                    key, from_timestamp, result.checkpoints, self._log.last_key(*key),
                )
        except CostingError as exc:
            return self._recalculation_rejected(key, from_timestamp, exc.to_rejection())

        logger.info(
            f"Recalculated {key} from {from_timestamp.isoformat()}: "
            f"{result.transactions_replayed} replayed, {result.transactions_changed} changed."
        )

        cascaded: Tuple[RecalculationOutcome, ...] = ()
        if self._settings.cascade_transfers:
            cascaded = tuple(self._cascade(result.changed_transfer_outs(), visited))

        changed = tuple(sorted(rewritten.values(), key=lambda tx: tx.sort_key))
        return RecalculationOutcome(
            status=OutcomeStatus.ACCEPTED,
            product_id=key.product_id,
            warehouse_id=key.warehouse_id,
            from_timestamp=from_timestamp,
            transactions_replayed=result.transactions_replayed,
            changed=changed,
            cascaded=cascaded,
        )

    def _cascade(self, transfer_outs: Sequence[Transaction], visited: Set[str]) -> List[RecalculationOutcome]:
        """
        Carry re-costed transfer-outs into their destinations: the
        TRANSFER_IN is corrected to the new source total and its pair
        recalculated. Runs after the source lock is released.
        """
        outcomes: List[RecalculationOutcome] = []
        for tx_out in transfer_outs:
            if tx_out.transfer_id in visited:
                continue
            visited.add(tx_out.transfer_id)
            linked = [
                tx for tx in self._log.by_transfer(tx_out.transfer_id)
                if tx.transaction_type == TransactionType.TRANSFER_IN
            ]
            for tx_in in linked:
                if tx_in.input_total_cost == tx_out.total_cost:
                    continue
                logger.info(
                    f"Cascading transfer {tx_out.transfer_id} into "
                    f"{tx_in.product_id}@{tx_in.warehouse_id}: "
                    f"{tx_in.input_total_cost} → {tx_out.total_cost}."
                )
                outcomes.append(self._recalculate(
                    PairKey(tx_in.product_id, tx_in.warehouse_id),
                    tx_in.occurred_at,
                    correction=(tx_in.transaction_id, self._follow_transfer(tx_out.total_cost)),
                    visited=visited,
                ))
        return outcomes

    def _follow_transfer(self, total_cost: Decimal) -> Callable[[Transaction], Transaction]:
        def derive(tx_in: Transaction) -> Transaction:
            return replace(
                tx_in,
                input_unit_cost=quantize_cost(total_cost / tx_in.quantity, self._settings.cost_places),
                input_total_cost=total_cost,
                revision=tx_in.revision + 1,
            )
        return derive

    def _recalculation_rejected(
        self, key: PairKey, from_timestamp: datetime, reason: RejectionReason,
    ) -> RecalculationOutcome:
        logger.warning(
            f"Rejected recalculation of {key} from {from_timestamp.isoformat()}: "
            f"{reason.code}: {reason.message}"
        )
        return RecalculationOutcome(
            status=OutcomeStatus.REJECTED,
            product_id=key.product_id,
            warehouse_id=key.warehouse_id,
            from_timestamp=from_timestamp,
            reason=reason,
        )

    def pending_recalculation(self) -> Dict[PairKey, datetime]:
        """Pairs with back-dated movements, and where to recalculate from."""
        return self._checkpoints.stale_pairs()

    # ══════════════════════════════════════════════════════════
    # HYDRATION
    # ══════════════════════════════════════════════════════════

    def hydrate(self) -> int:
        """
        Rebuild in-memory state from the repository's transactions.

        Stored records are loaded as-is; each pair's state is rebuilt
        by replay. A pair whose stored costs differ from replay order
        (back-dated movements never recalculated) is left pending.
        Returns the number of transactions loaded.
        """
        if len(self._log):
            raise RuntimeError("hydrate() requires an empty engine.")

        records = self._repository.load_transactions()
        for tx in records:
            self._log.append(tx)
        if records:
            self._log.advance_sequence(max(tx.sequence for tx in records))

        now = self._clock.now_utc()
        for product_id, warehouse_id in self._log.pairs():
            key = PairKey(product_id, warehouse_id)
            history = self._log.for_pair(product_id, warehouse_id)
            start = history[0].occurred_at
            result = self._recalculator.replay(key, start, history, now)
            self._states.put(result.final_state)
            if result.changed:
                self._checkpoints.mark_stale(key, result.changed[0].occurred_at)
                logger.warning(
                    f"Hydrated {key} with {result.transactions_changed} stored costs "
                    f"out of replay order; recalculation pending."
                )
            else:
                self._checkpoints.commit_replay(key, start, result.checkpoints, history[-1].sort_key)

        logger.info(f"Hydrated {len(records)} transactions across {len(self._log.pairs())} pairs.")
        return len(records)

    # ══════════════════════════════════════════════════════════
    # QUERIES
    # ══════════════════════════════════════════════════════════

    def quantity_on_hand(self, product_id: str, warehouse_id: str) -> Decimal:
        key = PairKey(product_id, warehouse_id)
        with self._locks.read(key):
            state = self._states.get(key)
            return state.quantity_on_hand() if state is not None else ZERO

    def average_cost(self, product_id: str, warehouse_id: str) -> Decimal:
        """Weighted-average cost, or the FIFO weighted cost of live lots."""
        key = PairKey(product_id, warehouse_id)
        with self._locks.read(key):
            state = self._states.get(key)
            return state.unit_cost_estimate() if state is not None else ZERO

    def lots(self, product_id: str, warehouse_id: str, include_exhausted: bool = False) -> List[Lot]:
        """FIFO lots of the pair in consumption order; empty under weighted average."""
        key = PairKey(product_id, warehouse_id)
        with self._locks.read(key):
            state = self._states.get(key)
            if state is None or state.ledger is None:
                return []
            return state.ledger.lots() if include_exhausted else state.ledger.active_lots()

    def method_of(self, product_id: str, warehouse_id: str) -> Optional[CostingMethod]:
        state = self._states.get(PairKey(product_id, warehouse_id))
        return state.method if state is not None else None

    def transactions(
        self,
        product_id: Optional[str] = None,
        warehouse_id: Optional[str] = None,
    ) -> List[Transaction]:
        """A pair's transactions in replay order, or everything by sequence."""
        if product_id is not None and warehouse_id is not None:
            return self._log.for_pair(product_id, warehouse_id)
        records = self._log.all()
        if product_id is not None:
            records = [tx for tx in records if tx.product_id == product_id]
        if warehouse_id is not None:
            records = [tx for tx in records if tx.warehouse_id == warehouse_id]
        return records

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self._log.get(transaction_id)

    def cogs(
        self,
        product_id: str,
        warehouse_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        types: Iterable[TransactionType] = (TransactionType.ISSUE,),
    ) -> Decimal:
        return self._log.cogs(product_id, warehouse_id, start, end, types)

    def total_inventory_value(self) -> Decimal:
        """Sum of every pair's valuation."""
        return self._states.total_value()
