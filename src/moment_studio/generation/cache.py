"""Asset caches scoped to one moment's generation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ..instrumentation import get_logger
from ..providers import GeneratedAsset
from ..sessions.models import AssetRef, Plan, SequenceBase, normalize_expression, normalize_identity
from ..storage import ArtifactStorage

logger = get_logger()


class CacheDecision(str, Enum):
    HIT = "hit"
    VARIANT = "variant"
    MISS = "miss"


@dataclass(slots=True)
class StoredAsset:
    asset: GeneratedAsset
    ref: AssetRef
    order: int


@dataclass(slots=True)
class CharacterEntry:
    identity: str
    base: StoredAsset
    variants: dict[str, StoredAsset] = field(default_factory=dict)


@dataclass(slots=True)
class CacheLookup:
    decision: CacheDecision
    identity: str
    expression: str
    stored: StoredAsset | None = None

    @property
    def reference(self) -> GeneratedAsset | None:
        return self.stored.asset if self.stored else None


class CharacterCache:
    """Portraits keyed by normalized speaker identity.

    The same expression reuses the stored portrait verbatim. A new expression
    is derived from the character's base portrait so the identity holds.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CharacterEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, speaker: str) -> bool:
        return normalize_identity(speaker) in self._entries

    def lookup(self, speaker: str, expression: str | None) -> CacheLookup:
        identity = normalize_identity(speaker)
        wanted = normalize_expression(expression)
        entry = self._entries.get(identity)
        if entry is None:
            return CacheLookup(CacheDecision.MISS, identity, wanted)
        if wanted in entry.variants:
            return CacheLookup(CacheDecision.HIT, identity, wanted, entry.variants[wanted])
        return CacheLookup(CacheDecision.VARIANT, identity, wanted, entry.base)

    def store(self, speaker: str, expression: str | None, stored: StoredAsset) -> None:
        identity = normalize_identity(speaker)
        wanted = normalize_expression(expression)
        entry = self._entries.get(identity)
        if entry is None:
            entry = CharacterEntry(identity=identity, base=stored)
            self._entries[identity] = entry
        entry.variants.setdefault(wanted, stored)


class BackgroundRegistry:
    """Order -> background map, filled in as sequences finish generating."""

    def __init__(self) -> None:
        self._by_order: dict[int, StoredAsset] = {}

    def __len__(self) -> int:
        return len(self._by_order)

    def register(self, order: int, stored: StoredAsset) -> None:
        self._by_order[order] = stored

    def resolve(self, reference: int | None, current_order: int) -> StoredAsset | None:
        """The background for ``reference`` if it points strictly backwards and exists."""
        if reference is None or reference >= current_order:
            return None
        return self._by_order.get(reference)


class MomentAssetCache:
    """Everything reusable within one moment. Discarded when the moment ends.

    ``style_reference`` is only set for single-unit reruns: the background of
    the sibling right before the rerun target, passed along when a fresh
    background has to be generated so the look stays consistent.
    """

    def __init__(self) -> None:
        self.characters = CharacterCache()
        self.backgrounds = BackgroundRegistry()
        self.style_reference: StoredAsset | None = None

    def absorb(self, seq: SequenceBase, storage: ArtifactStorage) -> None:
        """Register the files of an already generated sibling for reuse."""
        background = seq.assets.get("background")
        if background is not None:
            stored = _load(storage, background, seq.order)
            if stored is not None:
                self.backgrounds.register(seq.order, stored)
        portrait = seq.assets.get("portrait")
        speaker = getattr(seq, "speaker", None)
        if portrait is not None and speaker:
            stored = _load(storage, portrait, seq.order)
            if stored is not None:
                self.characters.store(speaker, getattr(seq, "expression", None), stored)

    @classmethod
    def seeded(cls, plan: Plan, before_order: int, storage: ArtifactStorage) -> "MomentAssetCache":
        """Rebuild the cache from earlier siblings' files for a single-unit rerun."""
        cache = cls()
        for seq in plan.sequences:
            if seq.order >= before_order:
                break
            cache.absorb(seq, storage)
        cache.style_reference = cache.backgrounds.resolve(before_order - 1, before_order)
        return cache


def _load(storage: ArtifactStorage, ref: AssetRef, order: int) -> StoredAsset | None:
    try:
        binary = storage.read_bytes(ref.path)
    except OSError as exc:
        logger.warning("Cannot reload %s for reuse: %s", ref.path, exc)
        return None
    asset = GeneratedAsset(binary=binary, mime_type=ref.mime_type, cost=0.0, kind=ref.kind)
    return StoredAsset(asset=asset, ref=ref, order=order)
