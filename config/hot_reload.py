"""config/hot_reload.py

Settings watcher for the ledger client, plus a bridge that turns a changed
active network into a pool rebuild on the client's event loop.

The watcher runs on a daemon thread and only swaps in settings that parse and
validate; a broken file leaves the running settings untouched.
"""

import asyncio
import dataclasses
import logging
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from config.runtime_schema import Settings, load_settings

logger = logging.getLogger(__name__)

ReloadListener = Callable[[Settings, Optional[Settings]], None]

# (mtime, size) of the file as last acknowledged
FileSignature = Tuple[float, int]


class ConfigReloader:
    """
    Polls a settings file and publishes each valid new version.

    Args:
        config_path: YAML file read by load_settings()
        on_reload: Called as on_reload(new, old) on the watcher thread
        poll_interval_sec: Seconds between file checks
    """

    SETTLE_DELAY_SEC = 0.05

    def __init__(
        self,
        config_path: str,
        on_reload: Optional[ReloadListener] = None,
        poll_interval_sec: float = 1.0,
    ):
        self._path = Path(config_path)
        self._listener = on_reload
        self._interval = poll_interval_sec

        self._settings: Optional[Settings] = None
        self._seen: Optional[FileSignature] = None
        self._guard = threading.RLock()

        self._halt = threading.Event()
        self._thread: Optional[threading.Thread] = None

        # Metrics
        self._reloads = 0
        self._rejected = 0

        signature = self._signature()
        if signature is None:
            logger.warning(f"[config] {self._path} does not exist yet; settings stay empty until it appears")
            return
        try:
            settings = load_settings(self._path)
        except (OSError, ValueError, TypeError, KeyError) as e:
            # get_config() stays None; callers decide whether that is fatal
            logger.error(f"[config] Could not load {self._path}: {e}")
            return
        with self._guard:
            self._settings = settings
            self._seen = signature
        logger.info(f"[config] Loaded {self._path} (network {settings.default_network})")

    def get_config(self) -> Optional[Settings]:
        """Current settings snapshot (None until a valid file was read)."""
        with self._guard:
            return self._settings

    def _signature(self) -> Optional[FileSignature]:
        try:
            stat = self._path.stat()
        except OSError:
            return None
        return (stat.st_mtime, stat.st_size)

    # ---------------------------------------------------------------- watcher

    def start_watching(self) -> None:
        if self._thread is not None:
            return
        self._halt.clear()
        self._thread = threading.Thread(target=self._watch, name="LedgerConfigWatcher", daemon=True)
        self._thread.start()
        logger.info(f"[config] Watching {self._path} every {self._interval}s")

    def stop_watching(self) -> None:
        self._halt.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        logger.info(f"[config] Stopped watching {self._path}")

    def _watch(self) -> None:
        while not self._halt.is_set():
            try:
                self.check_file()
            except Exception as e:
                logger.error(f"[config] Watcher iteration failed: {e}")
            self._halt.wait(self._interval)

    def check_file(self) -> bool:
        """
        One poll.

        Returns:
            True when a new valid version was published.
        """
        signature = self._signature()
        if signature is None or signature == self._seen:
            return False
        # editors that truncate-then-write need a moment
        time.sleep(self.SETTLE_DELAY_SEC)
        signature = self._signature() or signature
        return self._publish(signature)

    def _publish(self, signature: FileSignature) -> bool:
        try:
            fresh = load_settings(self._path)
        except Exception as e:
            self._rejected += 1
            # acknowledged so the same broken version is not re-parsed every poll
            self._seen = signature
            logger.error(f"[config] Rejected new version of {self._path}: {e}. Running settings unchanged.")
            return False

        with self._guard:
            previous = self._settings
            self._settings = fresh
            self._seen = signature
        self._reloads += 1

        if previous is None:
            logger.info(f"[config] Settings available from {self._path}")
        else:
            changes = describe_changes(previous, fresh)
            logger.info(f"[config] Reloaded {self._path}: {', '.join(changes) if changes else 'no effective change'}")

        if self._listener is not None:
            try:
                self._listener(fresh, previous)
            except Exception as e:
                logger.error(f"[config] on_reload listener raised: {e}")
        return True

    def get_metrics(self):
        return {
            "reloads": self._reloads,
            "rejected": self._rejected,
            "watching": self._thread is not None,
        }


def describe_changes(old: Settings, new: Settings) -> List[str]:
    """Changed client tunables plus any change to the active network."""
    changes = [
        f"{f.name} {getattr(old.client, f.name)} -> {getattr(new.client, f.name)}"
        for f in dataclasses.fields(old.client)
        if getattr(old.client, f.name) != getattr(new.client, f.name)
    ]
    if old.default_network != new.default_network:
        changes.append(f"default_network {old.default_network} -> {new.default_network}")
    elif old.network != new.network:
        changes.append(f"network {new.default_network} endpoints/identity changed")
    return changes


def reload_bridge(client, loop: asyncio.AbstractEventLoop, timeout_sec: float = 60.0) -> ReloadListener:
    """
    on_reload callback that keeps a LedgerClient on the configured network.

    Runs on the watcher thread. When the active network (or its definition)
    changed, the new network table is handed to the client and
    switch_network() is awaited on the client's loop.
    """

    def on_reload(new: Settings, old: Optional[Settings]) -> None:
        if old is not None and old.default_network == new.default_network and old.network == new.network:
            return
        client.update_networks(new.networks)
        pending = asyncio.run_coroutine_threadsafe(client.switch_network(new.default_network), loop)
        pending.result(timeout=timeout_sec)
        logger.info(f"[config] Client now on network {new.default_network}")

    return on_reload
