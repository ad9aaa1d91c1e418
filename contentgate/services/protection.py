"""
Classify viewer telemetry and map strike counts to protection states.

Client-side detection is a deterrent: it blanks the page and reports here.
Nothing in this module decides what content a caller may receive; that is
services.policy. The signals only feed the violation ledger.
"""
import enum
from dataclasses import dataclass

from contentgate.models.violation import ViolationKind
from contentgate.schemas.violation import ClientSignal

# outer minus inner window size above this suggests docked inspection tools
WINDOW_DELTA_THRESHOLD = 160
VISIBILITY_CHANGES_THRESHOLD = 3
VISIBILITY_WINDOW_SECONDS = 10.0

SCREENSHOT_KEYS = {"printscreen", "snapshot"}
MAC_SCREENSHOT_DIGITS = {"3", "4", "5", "6"}
DEVTOOLS_LETTERS = {"i", "j", "c"}
SAVE_PRINT_LETTERS = {"s", "p"}


def _classify_key(signal: ClientSignal) -> ViolationKind | None:
    key = (signal.key or "").lower()
    if key in SCREENSHOT_KEYS:
        return ViolationKind.SCREENSHOT_KEY
    # macOS Cmd+Shift+3/4/5/6, Windows Win+Shift+S
    if signal.meta and signal.shift and (key in MAC_SCREENSHOT_DIGITS or key == "s"):
        return ViolationKind.SCREENSHOT_KEY
    if key == "f12":
        return ViolationKind.DEVTOOLS_KEY
    if (signal.ctrl or signal.meta) and signal.shift and key in DEVTOOLS_LETTERS:
        return ViolationKind.DEVTOOLS_KEY
    if (signal.ctrl or signal.meta) and signal.alt and key in DEVTOOLS_LETTERS:
        return ViolationKind.DEVTOOLS_KEY
    if (signal.ctrl or signal.meta) and not signal.shift and key in SAVE_PRINT_LETTERS:
        return ViolationKind.SAVE_OR_PRINT_KEY
    return None


def _classify_window(signal: ClientSignal) -> ViolationKind | None:
    deltas = []
    if signal.outer_width is not None and signal.inner_width is not None:
        deltas.append(signal.outer_width - signal.inner_width)
    if signal.outer_height is not None and signal.inner_height is not None:
        deltas.append(signal.outer_height - signal.inner_height)
    if any(d > WINDOW_DELTA_THRESHOLD for d in deltas):
        return ViolationKind.DEVTOOLS_WINDOW
    return None


def _classify_visibility(signal: ClientSignal) -> ViolationKind | None:
    changes = signal.visibility_changes or 0
    window = signal.window_seconds if signal.window_seconds is not None else VISIBILITY_WINDOW_SECONDS
    if changes >= VISIBILITY_CHANGES_THRESHOLD and window <= VISIBILITY_WINDOW_SECONDS:
        return ViolationKind.VISIBILITY_CYCLING
    return None


def classify_signal(signal: ClientSignal) -> ViolationKind | None:
    """The violation a signal represents, or None for benign activity."""
    if signal.event == "keydown":
        return _classify_key(signal)
    if signal.event == "window_size":
        return _classify_window(signal)
    if signal.event == "visibility":
        return _classify_visibility(signal)
    return None


def parse_kind(value: str) -> ViolationKind:
    try:
        return ViolationKind(value)
    except ValueError:
        return ViolationKind.OTHER


class ProtectionStatus(str, enum.Enum):
    CLEAN = "clean"
    WARNED = "warned"
    LOCKED = "locked"


@dataclass(frozen=True)
class ProtectionState:
    status: ProtectionStatus
    strikes: int

    @property
    def locked(self) -> bool:
        return self.status == ProtectionStatus.LOCKED


def state_for(strikes: int, threshold: int) -> ProtectionState:
    """Clean at 0, Warned(n) below the threshold, Locked from the threshold on."""
    if strikes <= 0:
        return ProtectionState(ProtectionStatus.CLEAN, 0)
    if strikes >= threshold:
        return ProtectionState(ProtectionStatus.LOCKED, strikes)
    return ProtectionState(ProtectionStatus.WARNED, strikes)
