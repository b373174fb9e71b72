"""Vendor resolution: match extracted vendor text to known vendors."""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime
from typing import TYPE_CHECKING

from rapidfuzz.distance import JaroWinkler

from billflow.audit import emit
from billflow.errors import ValidationError
from billflow.models import RiskLevel, Vendor, VendorStatus, utcnow

if TYPE_CHECKING:
    from billflow.audit import AuditSink
    from billflow.config import EnginePolicy
    from billflow.repository import BillStore

logger = logging.getLogger(__name__)

_SUFFIXES = re.compile(
    r"\b(inc|incorporated|llc|ltd|limited|co|corp|corporation|company|gmbh)\b\.?"
)
_NON_WORD = re.compile(r"[^a-z0-9]+")

# Substring matches score below an exact match but above most fuzzy ones
SUBSTRING_SCORE = 0.9


def normalize_name(name: str) -> str:
    """Casefold, drop company suffixes and punctuation."""
    lowered = name.casefold()
    lowered = _SUFFIXES.sub(" ", lowered)
    return _NON_WORD.sub(" ", lowered).strip()


def name_similarity(a: str, b: str) -> float:
    """Score two vendor names from 0.0 to 1.0.

    Exact and substring matches score fixed values; anything else is the
    Jaro-Winkler similarity of the normalized names.
    """
    a_norm = normalize_name(a)
    b_norm = normalize_name(b)
    if not a_norm or not b_norm:
        return 0.0
    if a_norm == b_norm:
        return 1.0

    short, long = sorted((a_norm, b_norm), key=len)
    if len(short) >= 3 and short in long:
        return SUBSTRING_SCORE

    return JaroWinkler.normalized_similarity(a_norm, b_norm)


class VendorCache:
    """Per-owner vendor lists, owned by one resolver instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_owner: dict[str, list[Vendor]] = {}

    def get(self, owner_id: str) -> list[Vendor] | None:
        with self._lock:
            vendors = self._by_owner.get(owner_id)
            return list(vendors) if vendors is not None else None

    def put(self, owner_id: str, vendors: list[Vendor]) -> None:
        with self._lock:
            self._by_owner[owner_id] = list(vendors)

    def upsert(self, vendor: Vendor) -> None:
        """Replace or add ``vendor`` in its owner's list, if that list is cached."""
        with self._lock:
            vendors = self._by_owner.get(vendor.owner_id)
            if vendors is None:
                return
            self._by_owner[vendor.owner_id] = [
                v for v in vendors if v.id != vendor.id
            ] + [vendor]

    def invalidate(self, owner_id: str) -> None:
        with self._lock:
            self._by_owner.pop(owner_id, None)

    def clear(self) -> None:
        with self._lock:
            self._by_owner.clear()


class VendorResolver:
    """Resolve a candidate name/email to a Vendor, creating one if needed.

    Tie-break policy: exact email match beats any name match; among name
    matches the highest similarity wins; equal scores go to the most
    recently used vendor.
    """

    def __init__(
        self,
        store: BillStore,
        audit: AuditSink,
        policy: EnginePolicy,
        cache: VendorCache | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.policy = policy
        self.cache = cache if cache is not None else VendorCache()

    def resolve(
        self,
        candidate_name: str | None,
        candidate_email: str | None,
        owner_id: str,
    ) -> Vendor:
        name = (candidate_name or "").strip()
        email = (candidate_email or "").strip().lower() or None
        if not name and email is None:
            msg = "a vendor name or email is required"
            raise ValidationError(msg)

        with self.store.lock(f"vendors:{owner_id}"):
            vendors = self._vendors_for(owner_id)
            match = self.best_match(name, email, vendors)
            if match is not None:
                return self._touch(match, email)
            return self._create(name or email or "", email, owner_id)

    def best_match(
        self, name: str, email: str | None, vendors: list[Vendor]
    ) -> Vendor | None:
        """Pick the vendor ``name``/``email`` refer to, or None."""
        if email is not None:
            by_email = [v for v in vendors if v.email and v.email.lower() == email]
            if by_email:
                return max(by_email, key=_recency)

        if not name:
            return None

        scored = [(name_similarity(name, v.name), v) for v in vendors]
        scored = [
            (score, v)
            for score, v in scored
            if score >= self.policy.vendor_match_threshold
        ]
        if not scored:
            return None
        _score, vendor = max(scored, key=lambda pair: (pair[0], _recency(pair[1])))
        return vendor

    def register(self, vendor: Vendor) -> Vendor:
        """Add a fully specified vendor, merging into an existing match."""
        with self.store.lock(f"vendors:{vendor.owner_id}"):
            vendors = self._vendors_for(vendor.owner_id)
            email = vendor.email.lower() if vendor.email else None
            match = self.best_match(vendor.name, email, vendors)
            if match is None:
                return self._add(vendor)

            incoming = vendor.model_dump(
                exclude={
                    "id",
                    "owner_id",
                    "created_at",
                    "updated_at",
                    "status",
                    "last_used_at",
                },
                exclude_unset=True,
            )
            merged = match.evolve(**incoming, updated_at=utcnow())
            self.store.save_vendor(merged)
            self.cache.upsert(merged)
            emit(
                self.audit,
                "vendor_updated",
                entity_type="vendor",
                entity_id=merged.id,
                owner_id=merged.owner_id,
                description=f"Vendor updated: {merged.name}",
            )
            return merged

    def invalidate(self, owner_id: str) -> None:
        self.cache.invalidate(owner_id)

    def _vendors_for(self, owner_id: str) -> list[Vendor]:
        cached = self.cache.get(owner_id)
        if cached is not None:
            return cached
        vendors = self.store.list_vendors(owner_id)
        self.cache.put(owner_id, vendors)
        return vendors

    def _touch(self, vendor: Vendor, email: str | None) -> Vendor:
        now = utcnow()
        changes: dict[str, object] = {"last_used_at": now, "updated_at": now}
        if email is not None and not vendor.email:
            changes["email"] = email
        updated = vendor.evolve(**changes)
        self.store.save_vendor(updated)
        self.cache.upsert(updated)
        logger.debug("Resolved vendor %s (%s)", updated.name, updated.id)
        return updated

    def _create(self, name: str, email: str | None, owner_id: str) -> Vendor:
        now = utcnow()
        vendor = Vendor(
            owner_id=owner_id,
            name=name,
            email=email,
            status=VendorStatus.PENDING,
            last_used_at=now,
        )
        return self._add(vendor)

    def _add(self, vendor: Vendor) -> Vendor:
        self.store.add_vendor(vendor)
        self.cache.upsert(vendor)
        logger.info(
            "Created vendor %s (%s) for %s", vendor.name, vendor.id, vendor.owner_id
        )
        emit(
            self.audit,
            "vendor_created",
            entity_type="vendor",
            entity_id=vendor.id,
            owner_id=vendor.owner_id,
            description=f"New vendor added: {vendor.name}",
            risk=RiskLevel.MEDIUM,
        )
        return vendor


def _recency(vendor: Vendor) -> datetime:
    return vendor.last_used_at or vendor.updated_at
