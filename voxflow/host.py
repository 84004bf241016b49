"""
Desktop integration: hotkey input, text output and status notifications.

pynput is imported lazily because it needs a display server, and the core
(and its tests) must work without one.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Callable

from voxflow.config import MOD_ALT, MOD_CMD, MOD_CTRL, MOD_SHIFT, Settings

logger = logging.getLogger(__name__)

# Notification durations (ms)
NOTIFY_SHORT = 1000
NOTIFY_MEDIUM = 1500
NOTIFY_LONG = 2000

MODIFIER_FLAGS = {
    "shift": MOD_SHIFT,
    "shift_l": MOD_SHIFT,
    "shift_r": MOD_SHIFT,
    "ctrl": MOD_CTRL,
    "ctrl_l": MOD_CTRL,
    "ctrl_r": MOD_CTRL,
    "alt": MOD_ALT,
    "alt_l": MOD_ALT,
    "alt_r": MOD_ALT,
    "alt_gr": MOD_ALT,
    "cmd": MOD_CMD,
    "cmd_l": MOD_CMD,
    "cmd_r": MOD_CMD,
}

STATUS_MESSAGES = {
    "recording": "🎤 Recording...",
    "transcribing": "📝 Transcribing...",
    "correcting": "✨ Correcting...",
}


def notify(message: str, duration_ms: int = NOTIFY_MEDIUM) -> None:
    """
    Send desktop notification.

    Args:
        message: Notification message text
        duration_ms: Notification duration in milliseconds
    """
    try:
        subprocess.run(
            ["notify-send", "-t", str(duration_ms), "voxflow", message],
            stderr=subprocess.DEVNULL,
            check=False,  # Don't fail if notify-send is not available
        )
    except FileNotFoundError:
        logger.debug("notify-send not available, skipping notification")


# ============================================================================
# Trigger key
# ============================================================================


def modifier_flag(key) -> int:
    """Modifier bit for a pynput key, 0 for anything else."""
    return MODIFIER_FLAGS.get(getattr(key, "name", None), 0)


def key_code(key) -> int | None:
    code = getattr(key, "vk", None)
    if code is None:
        # Special keys (Key.space, Key.f1...) carry their KeyCode in .value
        code = getattr(getattr(key, "value", None), "vk", None)
    return code


def matches_trigger(code: int | None, held_modifiers: int, settings: Settings) -> bool:
    """True when code is the trigger key and every required modifier is held."""
    required = settings.trigger_modifier_flags
    return code == settings.trigger_key_code and (held_modifiers & required) == required


class HotkeyListener:
    """Global hotkey filter: calls on_trigger once per trigger key press."""

    def __init__(self, settings: Settings, on_trigger: Callable[[], None]) -> None:
        self.settings = settings
        self.on_trigger = on_trigger
        self._held: set[str] = set()
        self._trigger_down = False
        self._listener = None

    @property
    def held_modifiers(self) -> int:
        flags = 0
        for name in self._held:
            flags |= MODIFIER_FLAGS[name]
        return flags

    def on_press(self, key) -> None:
        if modifier_flag(key):
            self._held.add(key.name)
            return

        code = key_code(key)
        if not matches_trigger(code, self.held_modifiers, self.settings):
            return
        if self._trigger_down:
            return  # auto-repeat
        self._trigger_down = True

        try:
            self.on_trigger()
        except Exception as e:
            logger.error(f"Trigger handler failed: {e}", exc_info=True)

    def on_release(self, key) -> None:
        if modifier_flag(key):
            self._held.discard(key.name)
            return
        if key_code(key) == self.settings.trigger_key_code:
            self._trigger_down = False

    def start(self) -> None:
        from pynput import keyboard

        self._listener = keyboard.Listener(on_press=self.on_press, on_release=self.on_release)
        self._listener.start()
        logger.info(
            f"Hotkey listener started (key={self.settings.trigger_key_code}, "
            f"modifiers={self.settings.trigger_modifier_flags})"
        )

    def stop(self) -> None:
        if self._listener is not None:
            try:
                self._listener.stop()
            except Exception as e:
                logger.debug(f"Error stopping hotkey listener: {e}")
            self._listener = None


# ============================================================================
# Text output
# ============================================================================


class TypingSink:
    """
    Commits text into the focused window.

    Tries pynput first, then wtype (Wayland), then xdotool (X11), and finally
    copies to the clipboard.
    """

    def insert_text(self, text: str) -> None:
        if not text:
            return

        try:
            from pynput import keyboard

            keyboard.Controller().type(text)
            return
        except Exception as e:
            logger.debug(f"pynput typing failed: {e}")

        for command in (["wtype", text], ["xdotool", "type", "--clearmodifiers", text]):
            try:
                subprocess.run(command, check=True, stderr=subprocess.DEVNULL, timeout=5)
                return
            except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
                pass

        try:
            subprocess.run(["wl-copy", text], stderr=subprocess.DEVNULL, check=False)
            logger.info("Text copied to clipboard (typing failed)")
            notify("Text copied to clipboard", NOTIFY_MEDIUM)
        except FileNotFoundError:
            logger.warning("No text input method available (pynput, wtype, xdotool, or wl-copy)")


# ============================================================================
# Status
# ============================================================================


class NotifyStatus:
    """Session status over desktop notifications. Never blocks the caller."""

    def show(self, state) -> None:
        message = STATUS_MESSAGES.get(getattr(state, "value", state))
        if message:
            notify(message, NOTIFY_SHORT)

    def error(self, message: str) -> None:
        notify(f"❌ {message}", NOTIFY_LONG)

    def dismiss(self) -> None:
        """Notifications expire on their own; nothing to tear down."""
        pass


class DownloadProgress:
    """Progress sink for model downloads: logs every 10% and notifies at the ends."""

    def __init__(self, step: float = 0.1, notifier: Callable[[str, int], None] = notify) -> None:
        self.step = step
        self._notify = notifier
        self._next = 0.0

    def __call__(self, fraction: float) -> None:
        if self._next == 0.0 and fraction < 1.0:
            self._notify("⬇️ Downloading speech model...", NOTIFY_LONG)
        if fraction < self._next:
            return
        logger.info(f"Model download: {fraction * 100:.0f}%")
        self._next = (int(fraction / self.step) + 1) * self.step
        if fraction >= 1.0:
            self._notify("✓ Speech model ready", NOTIFY_MEDIUM)
