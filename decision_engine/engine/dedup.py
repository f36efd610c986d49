"""
Duplicate Detector — exact dedupe keys and near-duplicate content fingerprints.

Exact: the caller's dedupe_key, or a key derived from the event's identity fields
and a coarse creation-time bucket, is set-if-absent in the shared store. The stored
value is the event id, so re-evaluating the same event is not a duplicate of itself.

Near: a 64-bit SimHash over word shingles of the normalised text is compared with
fingerprints recorded for the same (user, source) inside a sliding window.
"""

import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from decision_engine.engine.models import Disposition, NotificationEvent, ReasonCode
from decision_engine.engine.store import KeyStore

logger = logging.getLogger(__name__)

FINGERPRINT_BITS = 64


def normalize_text(text: str) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    text = unicodedata.normalize("NFKD", text.lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^\w\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def _shingles(text: str, size: int = 2) -> List[str]:
    words = text.split()
    if len(words) < size:
        return words
    return [" ".join(words[i:i + size]) for i in range(len(words) - size + 1)]


def simhash(text: str) -> int:
    """64-bit SimHash of the normalised text."""
    weights = [0] * FINGERPRINT_BITS
    for token in _shingles(normalize_text(text)):
        h = int.from_bytes(hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest(), "big")
        for bit in range(FINGERPRINT_BITS):
            weights[bit] += 1 if (h >> bit) & 1 else -1
    value = 0
    for bit, weight in enumerate(weights):
        if weight > 0:
            value |= 1 << bit
    return value


def similarity(a: int, b: int) -> float:
    return 1.0 - bin(a ^ b).count("1") / FINGERPRINT_BITS


@dataclass
class DuplicateResult:
    verdict: Optional[Disposition] = None     # NEVER (terminal) or LATER (merge candidate)
    duplicate_type: Optional[str] = None      # exact / near
    dedupe_key: str = ""
    similarity: float = 0.0
    matched_event_id: Optional[str] = None
    digest_eligible: bool = False
    bias: float = 0.0
    reasons: List[str] = field(default_factory=list)

    @property
    def is_exact_duplicate(self) -> bool:
        return self.duplicate_type == "exact"


class DuplicateDetector:
    EXACT_TTL = 86400
    BUCKET_SECONDS = 300
    NEAR_WINDOW = 3600
    NEAR_THRESHOLD = 0.9
    DIGEST_MIN_EVENTS = 3

    def __init__(self, store: KeyStore, exact_ttl: int = EXACT_TTL, bucket_seconds: int = BUCKET_SECONDS,
                 near_window: int = NEAR_WINDOW, near_threshold: float = NEAR_THRESHOLD,
                 digest_min_events: int = DIGEST_MIN_EVENTS):
        self.store = store
        self.exact_ttl = exact_ttl
        self.bucket_seconds = bucket_seconds
        self.near_window = near_window
        self.near_threshold = near_threshold
        self.digest_min_events = digest_min_events

    def dedupe_key(self, event: NotificationEvent) -> str:
        if event.dedupe_key:
            return f"dedup:{event.user_id}:{event.dedupe_key}"
        bucket = int(event.created_at.timestamp() // self.bucket_seconds)
        parts = [event.user_id, event.event_type, event.source or "", event.channel,
                 event.content_hash, str(bucket)]
        digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]
        return f"dedup:auto:{event.user_id}:{digest}"

    def check(self, event: NotificationEvent, now: datetime, reevaluation: bool = False) -> DuplicateResult:
        """
        A key already owned by this event only counts as its own on re-evaluation;
        the same event submitted again as new is an exact duplicate of itself.
        """
        result = DuplicateResult(dedupe_key=self.dedupe_key(event))

        # Layer 1: exact key, atomic set-if-absent
        if not self.store.set_nx(result.dedupe_key, event.id, self.exact_ttl):
            owner = self.store.get(result.dedupe_key)
            # Key expired between the two calls: try to claim it once more
            claimed = owner is None and self.store.set_nx(result.dedupe_key, event.id, self.exact_ttl)
            if not claimed and (owner != event.id or not reevaluation):
                result.verdict = Disposition.NEVER
                result.duplicate_type = "exact"
                result.matched_event_id = owner
                result.reasons.append(ReasonCode.EXACT_DUPLICATE)
                logger.debug("Exact duplicate %s of %s", event.id, owner)
                return result

        # Layer 2: near-duplicate fingerprint
        fp = simhash(event.text)
        ts = now.timestamp()
        window_key = f"fingerprint:{event.user_id}:{event.source or '-'}"
        best_sim, best_id = 0.0, None
        for member in self.store.window_members(window_key, ts, self.near_window):
            other_id, _, hex_fp = member.rpartition(":")
            if other_id == event.id:
                continue
            sim = similarity(fp, int(hex_fp, 16))
            if sim > best_sim:
                best_sim, best_id = sim, other_id
        self.store.window_add(window_key, f"{event.id}:{fp:016x}", ts, self.near_window)

        if best_sim < self.near_threshold:
            return result

        result.duplicate_type = "near"
        result.similarity = round(best_sim, 4)
        result.matched_event_id = best_id
        self._apply_tie_break(event, result)

        if not event.is_urgent:
            burst_key = f"neardup:{event.user_id}"
            self.store.window_add(burst_key, event.id, ts, self.near_window)
            hits = len(set(self.store.window_members(burst_key, ts, self.near_window)))
            if hits >= self.digest_min_events:
                result.digest_eligible = True
                result.reasons.append(ReasonCode.DIGEST_ELIGIBLE)
        return result

    @staticmethod
    def _apply_tie_break(event: NotificationEvent, result: DuplicateResult) -> None:
        hint = event.priority_hint or "none"
        if event.is_urgent:
            result.reasons.append(f"{ReasonCode.NEAR_DUPLICATE_ALLOWED}:{hint}")
        elif hint in ("low", "none") and result.similarity >= 1.0:
            result.verdict = Disposition.NEVER
            result.reasons.append(f"{ReasonCode.NEAR_DUPLICATE_REDUNDANT}:{hint}")
        else:
            result.verdict = Disposition.LATER
            result.bias = -0.05
            result.reasons.append(f"{ReasonCode.NEAR_DUPLICATE_DIGEST}:{hint}")
