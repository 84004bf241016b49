#!/usr/bin/env python3
"""
voxflow - hotkey voice dictation.

Press the trigger key, speak, and stop talking (or press it again): the
recording is transcribed locally with whisper.cpp, optionally polished by an
OpenAI-compatible LLM, and typed into the window that had focus.

Architecture:
  Hotkey (pynput) / control socket -> Orchestrator
  -> AudioCapture (sounddevice, resample + silence detection)
  -> ModelManager (whisper.cpp) -> CorrectionClient (httpx) -> TypingSink

Usage:
  voxflow                          run the server
  voxflow toggle|start|stop|cancel send a command to the running server
  voxflow download                 fetch the speech model
"""

from __future__ import annotations

import fcntl
import logging
import os
import signal
import socket
import sys

from voxflow.audio import AudioCapture
from voxflow.config import (
    DEBUG_MODE,
    PID_FILE,
    SOCKET_PATH,
    ensure_data_dir,
    load_settings,
    validate_configuration,
)
from voxflow.correction import CorrectionClient
from voxflow.errors import ConfigurationError, ModelUnavailable
from voxflow.host import DownloadProgress, HotkeyListener, NotifyStatus, TypingSink
from voxflow.models import ModelManager
from voxflow.orchestrator import Orchestrator

logging.basicConfig(
    level=logging.DEBUG if DEBUG_MODE else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

COMMANDS = ("toggle", "start", "stop", "cancel")


# ============================================================================
# Process Management
# ============================================================================

_pid_lock_file = None


def acquire_pid_lock() -> bool:
    """Acquire exclusive lock via PID file."""
    global _pid_lock_file
    try:
        _pid_lock_file = open(PID_FILE, "w")
        fcntl.flock(_pid_lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        _pid_lock_file.write(str(os.getpid()))
        _pid_lock_file.flush()
        return True
    except IOError:
        if _pid_lock_file:
            _pid_lock_file.close()
            _pid_lock_file = None
        logger.info("Another instance is already running")
        return False


def release_pid_lock() -> None:
    """Release the PID file lock."""
    global _pid_lock_file
    try:
        if _pid_lock_file:
            fcntl.flock(_pid_lock_file.fileno(), fcntl.LOCK_UN)
            _pid_lock_file.close()
            _pid_lock_file = None
        if os.path.exists(PID_FILE):
            os.remove(PID_FILE)
    except Exception as e:
        logger.warning(f"Error releasing PID lock: {e}")


# ============================================================================
# Server
# ============================================================================


def build_orchestrator(settings) -> Orchestrator:
    """Wire the services for one process."""
    capture = AudioCapture(
        silence_duration=settings.silence_duration_seconds,
        device=settings.input_device,
    )
    models = ModelManager.from_settings(settings)
    corrector = CorrectionClient.from_settings(settings)
    sink = TypingSink()
    return Orchestrator(
        settings=settings,
        capture=capture,
        models=models,
        corrector=corrector,
        target_provider=lambda: sink,
        status=NotifyStatus(),
        progress=DownloadProgress(),
    )


class VoiceDictationServer:
    def __init__(self, orchestrator: Orchestrator, hotkeys: HotkeyListener | None = None):
        self._running = True
        self.orchestrator = orchestrator
        self.hotkeys = hotkeys

        if os.path.exists(SOCKET_PATH):
            os.remove(SOCKET_PATH)

        self.socket = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.socket.bind(SOCKET_PATH)
        self.socket.listen(1)
        os.chmod(SOCKET_PATH, 0o600)

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        self._running = False

    def handle_command(self, cmd: str) -> None:
        if cmd == "toggle":
            self.orchestrator.toggle()
        elif cmd == "start":
            self.orchestrator.start()
        elif cmd == "stop":
            self.orchestrator.stop()
        elif cmd == "cancel":
            self.orchestrator.cancel()
        else:
            logger.warning(f"Unknown command: {cmd}")

    def _cleanup(self):
        self.orchestrator.cancel()

        if self.hotkeys is not None:
            self.hotkeys.stop()

        try:
            self.socket.close()
        except OSError as e:
            logger.debug(f"Error closing socket: {e}")

        if os.path.exists(SOCKET_PATH):
            try:
                os.remove(SOCKET_PATH)
            except OSError as e:
                logger.debug(f"Error removing socket file: {e}")

        release_pid_lock()

    def run(self):
        if self.hotkeys is not None:
            try:
                self.hotkeys.start()
            except Exception as e:
                # No display server: the control socket still works
                logger.warning(f"Hotkey listener unavailable: {e}")

        self.orchestrator.warm_up()
        logger.info("voxflow ready")

        try:
            while self._running:
                try:
                    self.socket.settimeout(1.0)
                    conn, _ = self.socket.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if not self._running:
                        break
                    raise

                try:
                    cmd = conn.recv(1024).decode().strip()
                    logger.debug(f"Command: {cmd}")
                    self.handle_command(cmd)
                finally:
                    conn.close()
        finally:
            self._cleanup()


# ============================================================================
# CLI
# ============================================================================


def send_command(cmd: str) -> bool:
    """Send a command to the running voxflow instance via Unix socket."""
    try:
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        s.connect(SOCKET_PATH)
        s.send(cmd.encode())
        s.close()
        return True
    except (ConnectionRefusedError, FileNotFoundError, OSError) as e:
        print(f"voxflow is not running: {e}", file=sys.stderr)
        print("Start the server with: voxflow", file=sys.stderr)
        return False


def download_model() -> int:
    """Fetch the configured model, printing progress to the terminal."""
    ensure_data_dir()
    settings = load_settings()
    models = ModelManager.from_settings(settings)

    def show(fraction: float) -> None:
        print(f"\rDownloading {models.marker}: {fraction * 100:5.1f}%", end="", flush=True)

    try:
        location = models.download(show)
    except ModelUnavailable as e:
        print(f"\n{e}", file=sys.stderr)
        return 1
    print(f"\nModel available at {location.path}")
    return 0


def main() -> None:
    """
    Main entry point.

    With a command argument, forwards it to the running server. Otherwise
    starts the server.
    """
    if len(sys.argv) > 1:
        cmd = sys.argv[1]
        if cmd == "download":
            sys.exit(download_model())
        if cmd not in COMMANDS:
            print(f"Unknown command: {cmd}", file=sys.stderr)
            print(f"Usage: voxflow [{'|'.join(COMMANDS)}|download]", file=sys.stderr)
            sys.exit(1)
        if not send_command(cmd):
            sys.exit(1)
        return

    if not acquire_pid_lock():
        logger.info("Another instance is already running, exiting")
        sys.exit(0)

    try:
        ensure_data_dir()
        settings = load_settings()
        validate_configuration(settings)
    except ConfigurationError as e:
        release_pid_lock()
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        orchestrator = build_orchestrator(settings)
        hotkeys = HotkeyListener(settings, orchestrator.toggle)
        VoiceDictationServer(orchestrator, hotkeys).run()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        release_pid_lock()
        sys.exit(1)


if __name__ == "__main__":
    main()
