import asyncio
import logging
import shutil
import time
from pathlib import Path

from capbuilder.config import SWEEP_INTERVAL, WORKSPACE_DIR, WORKSPACE_MAX_AGE

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """One directory per build under ``base_dir``, swept once stale."""

    def __init__(self, base_dir: Path = WORKSPACE_DIR):
        self.base_dir = Path(base_dir)

    def path_for(self, build_id: str) -> Path:
        return self.base_dir / build_id

    def prepare(self, build_id: str) -> Path:
        """Return the build's workspace path, removing any leftover directory.

        The directory itself is created by the clone step.
        """
        self.base_dir.mkdir(parents=True, exist_ok=True)
        workspace = self.path_for(build_id)
        if workspace.exists():
            logger.warning("workspace %s already exists, removing", workspace)
            shutil.rmtree(workspace, ignore_errors=True)
        return workspace

    def cleanup(self, build_id: str) -> bool:
        workspace = self.path_for(build_id)
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
            logger.info("workspace cleaned: %s", build_id)
            return True
        return False

    def sweep(self, max_age: float = WORKSPACE_MAX_AGE, now: float | None = None) -> int:
        if not self.base_dir.exists():
            return 0
        cutoff = (now if now is not None else time.time()) - max_age
        removed = 0
        for item in self.base_dir.iterdir():
            try:
                if item.is_dir() and item.stat().st_mtime < cutoff:
                    shutil.rmtree(item)
                    removed += 1
            except OSError as e:
                logger.warning("sweep: could not remove %s: %s", item, e)
        if removed:
            logger.info("sweep removed %d stale workspace(s)", removed)
        return removed

    async def run_sweeper(self, interval: float = SWEEP_INTERVAL, max_age: float = WORKSPACE_MAX_AGE) -> None:
        """Sweep now, then every ``interval`` seconds until cancelled."""
        while True:
            try:
                await asyncio.to_thread(self.sweep, max_age)
            except Exception:
                logger.exception("workspace sweep failed")
            await asyncio.sleep(interval)
