import math
from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional, Tuple

CLEAN = 'clean'
THROTTLED = 'throttled'
BANNED = 'banned'
STATUS_RANK = {CLEAN: 0, THROTTLED: 1, BANNED: 2}


def _split(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(',')
    return tuple(str(v).strip() for v in value if str(v).strip())


def _pairs(value) -> FrozenSet[Tuple[str, str]]:
    pairs = set()
    for item in _split(value):
        src, _, dst = item.partition(':')
        if src and dst:
            pairs.add((src.strip(), dst.strip()))
    return frozenset(pairs)


def _levels(value) -> Mapping[str, int]:
    return {src: int(level) for src, level in _pairs(value)}


@dataclass(frozen=True)
class SecurityPolicy:
    """Thresholds for write plausibility and escalation. Deployment-tunable."""

    score_max_delta: int = 50
    score_delta_window_sec: int = 5
    score_max_windows: int = 12
    score_absolute_max: int = 10000
    phase_order: Tuple[str, ...] = ('lobby', 'playing', 'results', 'finished')
    phase_extra_transitions: FrozenSet[Tuple[str, str]] = frozenset({('results', 'playing'), ('*', 'finished')})
    fsk_category_levels: Optional[Mapping[str, int]] = None
    violation_window_sec: int = 24 * 3600
    throttle_threshold: int = 2
    ban_threshold: int = 3
    throttle_interval_ms: int = 1000
    escalation_max_retries: int = 3
    rapid_update_limit: int = 30
    rapid_update_window_sec: int = 60
    tracking_cache_size: int = 2000

    @classmethod
    def from_config(cls, cfg) -> 'SecurityPolicy':
        defaults = cls()
        return cls(
            score_max_delta=int(cfg.get('SCORE_MAX_DELTA', defaults.score_max_delta)),
            score_delta_window_sec=int(cfg.get('SCORE_DELTA_WINDOW_SEC', defaults.score_delta_window_sec)),
            score_max_windows=int(cfg.get('SCORE_MAX_WINDOWS', defaults.score_max_windows)),
            score_absolute_max=int(cfg.get('SCORE_ABSOLUTE_MAX', defaults.score_absolute_max)),
            phase_order=_split(cfg.get('PHASE_ORDER')) or defaults.phase_order,
            phase_extra_transitions=_pairs(cfg.get('PHASE_EXTRA_TRANSITIONS', 'results:playing,*:finished')),
            fsk_category_levels=_levels(cfg.get('FSK_CATEGORY_LEVELS', 'fsk16:16,fsk18:18')),
            violation_window_sec=int(cfg.get('VIOLATION_WINDOW_HOURS', 24)) * 3600,
            throttle_threshold=int(cfg.get('THROTTLE_THRESHOLD', defaults.throttle_threshold)),
            ban_threshold=int(cfg.get('BAN_THRESHOLD', defaults.ban_threshold)),
            throttle_interval_ms=int(cfg.get('THROTTLE_INTERVAL_MS', defaults.throttle_interval_ms)),
            escalation_max_retries=int(cfg.get('ESCALATION_MAX_RETRIES', defaults.escalation_max_retries)),
            rapid_update_limit=int(cfg.get('RAPID_UPDATE_LIMIT', defaults.rapid_update_limit)),
            rapid_update_window_sec=int(cfg.get('RAPID_UPDATE_WINDOW_SEC', defaults.rapid_update_window_sec)),
            tracking_cache_size=int(cfg.get('TRACKING_CACHE_SIZE', defaults.tracking_cache_size)),
        )

    @property
    def restricted_categories(self) -> Mapping[str, int]:
        if self.fsk_category_levels is None:
            return {'fsk16': 16, 'fsk18': 18}
        return self.fsk_category_levels

    def allowed_score_delta(self, elapsed: Optional[float]) -> int:
        """Largest plausible score gain after ``elapsed`` seconds (one window if unknown)."""
        if elapsed is None or elapsed <= 0:
            windows = 1
        else:
            windows = math.ceil(elapsed / self.score_delta_window_sec)
        windows = max(1, min(windows, self.score_max_windows))
        return self.score_max_delta * windows

    def phase_transition_allowed(self, src: str, dst: str) -> bool:
        return (src, dst) in self.phase_extra_transitions or ('*', dst) in self.phase_extra_transitions

    def status_for(self, count: int) -> str:
        if count >= self.ban_threshold:
            return BANNED
        if count >= self.throttle_threshold:
            return THROTTLED
        return CLEAN
