"""
Dart Tracker - multi-frame stability registry.

A dart is only reported once it has been seen in enough frames at the same
place. Observations are matched to a small registry keyed by a rounded board
coordinate; entries that go unmatched for too long are purged and the
registry never grows past a fixed capacity.
"""
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from dartvision.core.config import ValidatorConfig
from dartvision.core.detection import DetectedDart

logger = logging.getLogger(__name__)

# Rounded board position plus a slot index for far-apart darts sharing a cell
RegistryKey = Tuple[int, int, int]


@dataclass
class TrackedDart:
    """Registry entry: the dart as last observed plus its stability state."""
    key: RegistryKey
    dart: DetectedDart
    emitted: bool = False


class StabilityRegistry:
    """
    Fixed-capacity registry of recently seen darts.

    Owned by one scoring session. When full, the entry seen least recently
    is evicted to make room.
    """

    def __init__(self, config: Optional[ValidatorConfig] = None):
        self.config = config or ValidatorConfig()
        self._lock = Lock()
        self._entries: "OrderedDict[RegistryKey, TrackedDart]" = OrderedDict()

    def _key(self, dart: DetectedDart) -> RegistryKey:
        grid = self.config.registry_key_mm
        bx, by = dart.board_point if dart.board_point is not None else (dart.x, dart.y)
        return int(round(bx / grid)), int(round(by / grid)), 0

    def _purge(self, now: float) -> None:
        stale = [
            key for key, entry in self._entries.items()
            if now - entry.dart.last_seen_at > self.config.inactivity_seconds
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"[TRACK] Purged {len(stale)} stale dart(s)")

    def _match(self, dart: DetectedDart, key: RegistryKey, taken: set) -> Optional[TrackedDart]:
        tolerance = self.config.match_tolerance_px
        entry = self._entries.get(key)
        if (entry is not None and key not in taken
                and math.hypot(entry.dart.x - dart.x, entry.dart.y - dart.y) <= tolerance):
            return entry
        best, best_dist = None, tolerance
        for k, candidate in self._entries.items():
            if k in taken:
                continue
            dist = math.hypot(candidate.dart.x - dart.x, candidate.dart.y - dart.y)
            if dist <= best_dist:
                best, best_dist = candidate, dist
        return best

    def _is_duplicate(self, dart: DetectedDart, taken: set) -> bool:
        """Same spot as a dart already matched in this frame."""
        return any(
            math.hypot(self._entries[k].dart.x - dart.x, self._entries[k].dart.y - dart.y)
            <= self.config.match_tolerance_px
            for k in taken if k in self._entries
        )

    def observe(self, darts: List[DetectedDart], now: Optional[float] = None) -> List[DetectedDart]:
        """
        Record one frame's accepted darts.

        Returns the darts that became stable in this frame. Each physical dart
        is returned at most once while it stays in the registry.
        """
        now = time.monotonic() if now is None else now
        stable: List[DetectedDart] = []

        with self._lock:
            self._purge(now)
            taken: set = set()

            for dart in darts:
                key = self._key(dart)
                entry = self._match(dart, key, taken)
                if entry is None and self._is_duplicate(dart, taken):
                    continue

                if entry is None:
                    while len(self._entries) >= self.config.registry_capacity:
                        evicted_key, _ = self._entries.popitem(last=False)
                        logger.debug(f"[TRACK] Registry full, evicted {evicted_key}")
                    dart.frames_seen = 1
                    dart.first_seen_at = now
                    dart.last_seen_at = now
                    while key in self._entries:
                        key = (key[0], key[1], key[2] + 1)
                    entry = TrackedDart(key=key, dart=dart)
                    self._entries[key] = entry
                else:
                    tracked = entry.dart
                    tracked.frames_seen += 1
                    tracked.last_seen_at = now
                    tracked.x, tracked.y = dart.x, dart.y
                    tracked.radius_px = dart.radius_px
                    tracked.confidence = dart.confidence
                    tracked.board_point = dart.board_point
                    tracked.score = dart.score
                    tracked.ring = dart.ring
                    tracked.sector = dart.sector
                    tracked.multiplier = dart.multiplier
                    self._entries.move_to_end(entry.key)

                taken.add(entry.key)
                if not entry.emitted and entry.dart.frames_seen >= self.config.stable_frames:
                    entry.emitted = True
                    stable.append(entry.dart)

        return stable

    def reset(self) -> None:
        """Forget every tracked dart (board cleared)."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "tracked": len(self._entries),
                "capacity": self.config.registry_capacity,
                "darts": [
                    {
                        "x": e.dart.x,
                        "y": e.dart.y,
                        "score": e.dart.score,
                        "ring": e.dart.ring.value if e.dart.ring is not None else None,
                        "frames_seen": e.dart.frames_seen,
                        "emitted": e.emitted,
                    }
                    for e in self._entries.values()
                ],
            }
