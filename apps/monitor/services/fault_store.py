"""
Fault ledger and active-fault index.

The ledger keeps every fault ever accepted (bounded; only terminal faults
are evicted). The active index maps (type, service_id) to the single
non-terminal fault for that pair, which is what makes deduplication work.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..models.fault_models import Fault, FaultType

logger = logging.getLogger("selfheal.fault_store")

_DEFAULT_LEDGER_CAPACITY = 10000


class FaultStore:
    def __init__(self, capacity: int = _DEFAULT_LEDGER_CAPACITY) -> None:
        self.capacity = capacity
        # Insertion ordered: oldest first.
        self._faults: Dict[str, Fault] = {}
        self._active: Dict[Tuple[str, str], str] = {}

    # ------------------------------------------------------------------
    # Active index
    # ------------------------------------------------------------------

    def find_active(self, fault_type: FaultType, service_id: str) -> Optional[Fault]:
        fault_id = self._active.get((FaultType(fault_type).value, service_id))
        return self._faults.get(fault_id) if fault_id else None

    def is_active(self, fault_id: str) -> bool:
        return fault_id in self._active.values()

    def merge_into(self, existing: Fault, incoming: Fault) -> Fault:
        """Fold a duplicate detection into the existing active fault."""
        existing.metrics = {**existing.metrics, **incoming.metrics}
        existing.detected_at = incoming.detected_at
        for component in incoming.affected_components:
            if component not in existing.affected_components:
                existing.affected_components.append(component)
        logger.debug(
            "Merged duplicate detection into fault %s (type=%s service=%s)",
            existing.id,
            existing.type.value,
            existing.service_id,
        )
        return existing

    def add(self, fault: Fault) -> None:
        key = fault.dedup_key
        current = self._active.get(key)
        if current is not None and current != fault.id:
            raise ValueError(
                f"fault {current} is already active for type={key[0]} service={key[1]}"
            )
        self._faults[fault.id] = fault
        self._active[key] = fault.id
        self._evict()

    def deactivate(self, fault: Fault) -> None:
        key = fault.dedup_key
        if self._active.get(key) == fault.id:
            del self._active[key]

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def get(self, fault_id: str) -> Optional[Fault]:
        return self._faults.get(fault_id)

    def all(self) -> List[Fault]:
        return list(self._faults.values())

    def active(self) -> List[Fault]:
        return [self._faults[fid] for fid in self._active.values() if fid in self._faults]

    def __len__(self) -> int:
        return len(self._faults)

    def prune(self, older_than: datetime) -> int:
        """Drop terminal faults detected before `older_than`."""
        stale = [
            fid for fid, fault in self._faults.items()
            if fault.is_terminal and fault.detected_at < older_than
        ]
        for fid in stale:
            del self._faults[fid]
        return len(stale)

    def _evict(self) -> None:
        if len(self._faults) <= self.capacity:
            return
        overflow = len(self._faults) - self.capacity
        for fid in [fid for fid, f in self._faults.items() if f.is_terminal][:overflow]:
            del self._faults[fid]
