"""Persisted canonical mappings with point, name and aggregate reads.

The store keeps a working copy that syncs mutate under a lock, and a
published snapshot that only changes on ``commit()``. Readers such as the
lookup service use the snapshot, so they never wait on an in-flight sync and
always see the last committed state.
"""

import asyncio
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Set, Tuple

from loguru import logger

from team_identity.config.settings import MatchingConfig
from team_identity.errors import ConflictOnWrite, MappingRejected
from team_identity.matching.similarity import score as default_score
from team_identity.models.enums import MappingStatus, Source
from team_identity.models.mapping import CanonicalMapping, primary_name_for
from team_identity.models.outcome import SimilarityScore
from team_identity.models.report import CoverageReport
from team_identity.normalization.normalizer import normalize as default_normalize
from team_identity.storage.backends import MappingBackend, MemoryBackend
from team_identity.utils.misc_utils import country_key, utcnow

Key = Tuple[Source, str]

_STATUS_RANK = {
    MappingStatus.STUB: 0,
    MappingStatus.ACCEPTED: 1,
    MappingStatus.AUTO_VERIFIED: 2,
    MappingStatus.VERIFIED: 3,
}


class UpsertResult(NamedTuple):
    mapping: CanonicalMapping
    created: bool
    changed: bool


class MappingView:
    """Read-only queries over a set of mappings."""

    def __init__(
        self,
        config: MatchingConfig,
        mappings: Optional[Dict[str, CanonicalMapping]] = None,
        by_key: Optional[Dict[Key, str]] = None,
        by_name: Optional[Dict[str, Set[str]]] = None,
        scorer: Callable[[str, str], SimilarityScore] = default_score,
        normalizer: Callable[[Any], str] = default_normalize,
    ):
        self.config = config
        self.scorer = scorer
        self.normalizer = normalizer
        self._mappings: Dict[str, CanonicalMapping] = mappings or {}
        self._by_key: Dict[Key, str] = by_key or {}
        self._by_name: Dict[str, Set[str]] = by_name or {}

    def __len__(self) -> int:
        return len(self._mappings)

    def get(self, mapping_id: str) -> Optional[CanonicalMapping]:
        return self._mappings.get(mapping_id)

    def all(self, include_retired: bool = False) -> List[CanonicalMapping]:
        mappings = sorted(self._mappings.values(), key=lambda m: m.mapping_id)
        if include_retired:
            return mappings
        return [m for m in mappings if not m.retired]

    def owner_of(self, source: Source, source_id: str) -> Optional[CanonicalMapping]:
        """The mapping holding a provider id, retired ones included."""
        mapping_id = self._by_key.get((source, str(source_id)))
        return self._mappings.get(mapping_id) if mapping_id else None

    def get_by_source_id(self, source: Source, source_id: str) -> Optional[CanonicalMapping]:
        """Point lookup by provider id. Retired mappings are not returned."""
        mapping = self.owner_of(source, source_id)
        if mapping is None or mapping.retired:
            return None
        return mapping

    def mappings_for_country(self, country: str, include_retired: bool = False) -> List[CanonicalMapping]:
        key = country_key(country)
        return [
            m
            for m in self.all(include_retired=include_retired)
            if not m.is_tombstone and country_key(m.country) == key
        ]

    def get_by_name(
        self,
        raw_name: str,
        source: Optional[Source] = None,
        country: Optional[str] = None,
    ) -> Optional[CanonicalMapping]:
        """Finds the mapping whose known spellings best match ``raw_name``.

        Exact normalized hits win; otherwise every stored variation is scored
        and the best one is returned only if it reaches the accept threshold.
        """
        query = self.normalizer(raw_name)
        if not query:
            return None
        wanted_country = country_key(country)

        def eligible(mapping: CanonicalMapping) -> bool:
            if mapping.retired:
                return False
            if source is not None and mapping.ref(source) is None:
                return False
            if wanted_country is not None and country_key(mapping.country) != wanted_country:
                return False
            return True

        def rank(mapping: CanonicalMapping, value: float) -> Tuple[float, bool, float]:
            return (value, mapping.verified, mapping.confidence)

        best: Optional[CanonicalMapping] = None
        best_rank: Optional[Tuple[float, bool, float]] = None

        exact_ids = sorted(self._by_name.get(query, ()))
        for mapping_id in exact_ids:
            mapping = self._mappings[mapping_id]
            if eligible(mapping) and (best_rank is None or rank(mapping, 1.0) > best_rank):
                best, best_rank = mapping, rank(mapping, 1.0)
        if best is not None:
            return best

        threshold = self.config.accept_threshold
        for name in sorted(self._by_name):
            value = self.scorer(query, name).value
            if value < threshold:
                continue
            for mapping_id in sorted(self._by_name[name]):
                mapping = self._mappings[mapping_id]
                if eligible(mapping) and (best_rank is None or rank(mapping, value) > best_rank):
                    best, best_rank = mapping, rank(mapping, value)

        if best is not None:
            logger.debug(f"Name lookup '{raw_name}' matched {best.mapping_id} at {best_rank[0]:.3f}")
        return best

    def _normalized_variations(self, mapping: CanonicalMapping) -> Set[str]:
        names = {self.normalizer(v) for v in mapping.variations}
        names.discard("")
        return names

    def stats(self) -> CoverageReport:
        active = self.all()
        linked = [m for m in active if m.is_linked]
        by_country: Dict[str, int] = defaultdict(int)
        for mapping in active:
            by_country[mapping.country or "Unknown"] += 1

        avg = sum(m.confidence for m in linked) / len(linked) if linked else 0.0
        return CoverageReport(
            total=len(active),
            both_sources=len(linked),
            source_a_only=sum(1 for m in active if m.source_a and not m.source_b),
            source_b_only=sum(1 for m in active if m.source_b and not m.source_a),
            verified_count=sum(1 for m in active if m.verified),
            avg_confidence=round(avg, 4),
            by_country=dict(sorted(by_country.items())),
            countries=len(by_country),
            retired=sum(
                1 for m in self._mappings.values() if m.retired and not m.is_tombstone
            ),
        )

    def to_documents(self) -> List[Dict[str, Any]]:
        """Every mapping, tombstones included, as JSON-ready dicts."""
        return [m.model_dump(mode="json") for m in self.all(include_retired=True)]


class MappingStore(MappingView):
    """The single owner of canonical mappings for a process.

    Constructed once at startup and passed to the resolver, the orchestrator
    and the lookup service.
    """

    def __init__(
        self,
        backend: Optional[MappingBackend] = None,
        config: Optional[MatchingConfig] = None,
        scorer: Callable[[str, str], SimilarityScore] = default_score,
        normalizer: Callable[[Any], str] = default_normalize,
    ):
        super().__init__(config or MatchingConfig(), scorer=scorer, normalizer=normalizer)
        self.backend = backend or MemoryBackend()
        self._lock = threading.RLock()
        self._partition_locks: Dict[str, threading.Lock] = {}
        self._commit_lock = asyncio.Lock()
        self._published: MappingView = self._copy_view()

    # --- Persistence ---

    async def load(self) -> int:
        """Replaces the working state with the backend's document."""
        documents = await self.backend.load()
        with self._lock:
            self._mappings, self._by_key, self._by_name = {}, {}, {}
            for document in documents:
                mapping = CanonicalMapping.model_validate(document)
                for key in mapping.keys():
                    if key in self._by_key:
                        raise ConflictOnWrite(
                            f"Stored document maps {key[0].value}:{key[1]} twice",
                            key,
                            self._by_key[key],
                        )
                self._put(mapping)
            self._published = self._copy_view()
        logger.info(f"Mapping store loaded with {len(self._mappings)} mappings.")
        return len(self._mappings)

    async def commit(self) -> None:
        """Saves the whole document, then publishes it to readers."""
        async with self._commit_lock:
            with self._lock:
                view = self._copy_view()
            await self.backend.save(view.to_documents())
            self._published = view
        logger.debug(f"Committed {len(view)} mappings.")

    def snapshot(self) -> MappingView:
        """The last committed state. Safe to read while a sync runs."""
        return self._published

    # Reads that iterate take the lock; partitions write from worker threads

    def all(self, include_retired: bool = False) -> List[CanonicalMapping]:
        with self._lock:
            return super().all(include_retired=include_retired)

    def get_by_name(
        self,
        raw_name: str,
        source: Optional[Source] = None,
        country: Optional[str] = None,
    ) -> Optional[CanonicalMapping]:
        with self._lock:
            return super().get_by_name(raw_name, source=source, country=country)

    def stats(self) -> CoverageReport:
        with self._lock:
            return super().stats()

    def to_document(self) -> Dict[str, Any]:
        with self._lock:
            return {"mappings": self.to_documents()}

    def partition_lock(self, country: Optional[str]) -> threading.Lock:
        """Serializes resolve-then-write for one partition."""
        key = country_key(country) or ""
        with self._lock:
            if key not in self._partition_locks:
                self._partition_locks[key] = threading.Lock()
            return self._partition_locks[key]

    def _copy_view(self) -> MappingView:
        return MappingView(
            self.config,
            mappings=dict(self._mappings),
            by_key=dict(self._by_key),
            by_name={name: set(ids) for name, ids in self._by_name.items()},
            scorer=self.scorer,
            normalizer=self.normalizer,
        )

    # --- Indexing ---

    def _put(self, mapping: CanonicalMapping) -> None:
        previous = self._mappings.get(mapping.mapping_id)
        if previous is not None:
            for key in previous.keys():
                if self._by_key.get(key) == previous.mapping_id:
                    del self._by_key[key]
            for name in self._normalized_variations(previous):
                ids = self._by_name.get(name)
                if ids is not None:
                    ids.discard(previous.mapping_id)
                    if not ids:
                        del self._by_name[name]

        self._mappings[mapping.mapping_id] = mapping
        for key in mapping.keys():
            self._by_key[key] = mapping.mapping_id
        for name in self._normalized_variations(mapping):
            self._by_name.setdefault(name, set()).add(mapping.mapping_id)

    def _free_id(self, mapping_id: str) -> str:
        if mapping_id not in self._mappings:
            return mapping_id
        suffix = 2
        while f"{mapping_id}_{suffix}" in self._mappings:
            suffix += 1
        return f"{mapping_id}_{suffix}"

    # --- Writes ---

    def upsert(self, incoming: CanonicalMapping) -> UpsertResult:
        """Inserts or merges a mapping keyed by its (source, id) pairs.

        Raises:
            MappingRejected: a linked mapping below the reject threshold.
            ConflictOnWrite: one of its ids belongs to a mapping that links a
                different counterpart.
        """
        if incoming.is_linked and incoming.confidence < self.config.reject_threshold:
            raise MappingRejected(
                f"Refusing mapping {incoming.mapping_id} at confidence "
                f"{incoming.confidence:.3f} (< {self.config.reject_threshold})"
            )
        if incoming.is_tombstone:
            raise MappingRejected(f"Refusing mapping {incoming.mapping_id} without sources")

        with self._lock:
            owners: List[CanonicalMapping] = []
            for source in (Source.A, Source.B):
                ref = incoming.ref(source)
                if ref is None:
                    continue
                owner = self.owner_of(source, ref.id)
                if owner is None:
                    continue
                their_other = owner.ref(source.other())
                our_other = incoming.ref(source.other())
                if their_other is not None and our_other is not None and their_other.id != our_other.id:
                    raise ConflictOnWrite(
                        f"{source.value}:{ref.id} already mapped to "
                        f"{source.other().value}:{their_other.id} by {owner.mapping_id}",
                        (source, ref.id),
                        owner.mapping_id,
                    )
                if owner not in owners:
                    owners.append(owner)

            if not owners:
                mapping = incoming.evolve(
                    mapping_id=self._free_id(incoming.mapping_id),
                    primary_name=primary_name_for(incoming.source_a, incoming.source_b),
                    last_synced_at=utcnow(),
                )
                self._put(mapping)
                logger.debug(f"Created mapping {mapping.mapping_id} ({mapping.primary_name})")
                return UpsertResult(mapping, True, True)

            target = owners[0]
            merged = self._merge(target, incoming)
            for absorbed in owners[1:]:
                # Two single-source stubs meeting: the second one folds in
                merged = self._merge(merged, absorbed.evolve(verified=False))
                tombstone = absorbed.evolve(
                    source_a=None,
                    source_b=None,
                    retired=True,
                    retired_at=utcnow(),
                    merged_into=target.mapping_id,
                    last_synced_at=utcnow(),
                )
                self._put(tombstone)
                logger.debug(f"Stub {absorbed.mapping_id} absorbed into {target.mapping_id}")

            changed = len(owners) > 1 or not merged.content_equals(target)
            if changed:
                merged = merged.evolve(last_synced_at=utcnow())
                self._put(merged)
            return UpsertResult(merged if changed else target, False, changed)

    def _merge(self, existing: CanonicalMapping, incoming: CanonicalMapping) -> CanonicalMapping:
        variations = list(existing.variations) + list(incoming.variations)

        if existing.verified and not incoming.verified:
            # Verified mappings only change through explicit manual actions;
            # automatic input may add spellings and mark the team as seen.
            return existing.evolve(variations=variations, retired=False, retired_at=None)

        source_a = incoming.source_a or existing.source_a
        source_b = incoming.source_b or existing.source_b
        gains_side = existing.is_stub and source_a is not None and source_b is not None

        if incoming.is_stub and existing.is_linked:
            confidence, status = existing.confidence, existing.status
        elif gains_side or (incoming.verified and not existing.verified):
            confidence, status = incoming.confidence, incoming.status
        else:
            confidence = max(existing.confidence, incoming.confidence)
            status = max(existing.status, incoming.status, key=_STATUS_RANK.__getitem__)

        if gains_side:
            confirmations, last_cycle = incoming.confirmations, incoming.last_confirmed_cycle
        elif existing.confirmations >= incoming.confirmations:
            confirmations, last_cycle = existing.confirmations, existing.last_confirmed_cycle
        else:
            confirmations, last_cycle = incoming.confirmations, incoming.last_confirmed_cycle

        return existing.evolve(
            primary_name=primary_name_for(source_a, source_b),
            source_a=source_a,
            source_b=source_b,
            country=(source_a.country if source_a and source_a.country else None)
            or (source_b.country if source_b else None)
            or existing.country
            or incoming.country,
            league=incoming.league or existing.league,
            variations=variations,
            confidence=confidence,
            status=status,
            verified=existing.verified or incoming.verified,
            auto_discovered=existing.auto_discovered and incoming.auto_discovered,
            country_override=existing.country_override or incoming.country_override,
            confirmations=confirmations,
            last_confirmed_cycle=last_cycle,
            retired=False,
            retired_at=None,
        )

    def release(self, source: Source, source_id: str) -> Optional[CanonicalMapping]:
        """Detaches one provider id from its mapping.

        The remaining side becomes an unverified single-source stub; a stub
        losing its only side is kept as a retired tombstone.
        """
        with self._lock:
            mapping = self.owner_of(source, source_id)
            if mapping is None:
                return None

            remaining = mapping.ref(source.other())
            if remaining is None:
                updated = mapping.evolve(
                    source_a=None,
                    source_b=None,
                    retired=True,
                    retired_at=utcnow(),
                    last_synced_at=utcnow(),
                )
            else:
                sides = {"source_a": None, "source_b": None}
                sides["source_a" if source.other() is Source.A else "source_b"] = remaining
                updated = mapping.evolve(
                    **sides,
                    primary_name=remaining.name,
                    country=remaining.country or mapping.country,
                    confidence=1.0,
                    status=MappingStatus.STUB,
                    verified=False,
                    confirmations=0,
                    last_confirmed_cycle=None,
                    last_synced_at=utcnow(),
                )
            self._put(updated)
            logger.info(f"Released {source.value}:{source_id} from mapping {mapping.mapping_id}")
            return updated

    def record_confirmation(self, mapping_id: str, cycle_id: str, required: int) -> Tuple[CanonicalMapping, bool]:
        """Counts one more cycle confirming an accepted pair.

        Returns the mapping and whether this confirmation promoted it to
        verified. Repeated calls within one cycle change nothing.
        """
        with self._lock:
            mapping = self._mappings[mapping_id]
            if mapping.verified or mapping.last_confirmed_cycle == cycle_id:
                return mapping, False
            confirmations = mapping.confirmations + 1
            promote = confirmations >= required
            changes: Dict[str, Any] = {
                "confirmations": confirmations,
                "last_confirmed_cycle": cycle_id,
                "last_synced_at": utcnow(),
            }
            if promote:
                changes.update(verified=True, status=MappingStatus.VERIFIED)
            updated = mapping.evolve(**changes)
            self._put(updated)
            if promote:
                logger.info(
                    f"Mapping {mapping_id} ({updated.primary_name}) verified after "
                    f"{confirmations} confirming cycles"
                )
            return updated, promote

    def verify(self, mapping_id: str) -> CanonicalMapping:
        """Manual confirmation of a mapping."""
        with self._lock:
            mapping = self._require(mapping_id)
            updated = mapping.evolve(
                verified=True,
                status=MappingStatus.VERIFIED,
                auto_discovered=False,
                last_synced_at=utcnow(),
            )
            self._put(updated)
        logger.info(f"Mapping {mapping_id} manually verified.")
        return updated

    def unverify(self, mapping_id: str) -> CanonicalMapping:
        """Manual withdrawal of verification; the next sync may re-resolve it."""
        with self._lock:
            mapping = self._require(mapping_id)
            updated = mapping.evolve(
                verified=False,
                status=MappingStatus.ACCEPTED if mapping.is_linked else MappingStatus.STUB,
                confirmations=0,
                last_confirmed_cycle=None,
                last_synced_at=utcnow(),
            )
            self._put(updated)
        logger.info(f"Mapping {mapping_id} verification withdrawn.")
        return updated

    def retire(self, mapping_id: str) -> CanonicalMapping:
        """Soft-deletes a mapping; it keeps its ids and revives on upsert."""
        with self._lock:
            mapping = self._require(mapping_id)
            if mapping.retired:
                return mapping
            updated = mapping.evolve(retired=True, retired_at=utcnow(), last_synced_at=utcnow())
            self._put(updated)
        logger.info(f"Retired mapping {mapping_id} ({updated.primary_name})")
        return updated

    def _require(self, mapping_id: str) -> CanonicalMapping:
        mapping = self._mappings.get(mapping_id)
        if mapping is None:
            raise KeyError(f"Unknown mapping id: {mapping_id}")
        return mapping
