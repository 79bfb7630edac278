from __future__ import annotations

import logging
from pathlib import Path
import shutil
import stat
import subprocess
import tempfile
import time

import psutil
import requests

from ..errors import BootstrapError
from ..settings import Settings

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 1024 * 1024
STOP_TIMEOUT_SECONDS = 10.0


class ServiceProcess:
    """Install, start and stop the backing service executable."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.process_name = Path(settings.service_executable).stem.lower()

    def executable_path(self) -> Path | None:
        configured = Path(self.settings.service_executable).expanduser()
        if configured.is_absolute() or len(configured.parts) > 1:
            return configured if configured.is_file() else None
        found = shutil.which(self.settings.service_executable)
        return Path(found) if found else None

    def is_installed(self) -> bool:
        return self.executable_path() is not None

    def install(self) -> bool:
        if self.is_installed():
            return False

        url = self.settings.service_installer_url
        if not url:
            raise BootstrapError(
                f"'{self.settings.service_executable}' is not installed and no installer URL is configured",
                stage="bootstrap:install",
            )

        logger.info("Downloading service installer from %s", url)
        with tempfile.TemporaryDirectory(prefix="cloister-install-") as workdir:
            installer = Path(workdir) / (Path(url).name or "installer")
            try:
                with requests.get(url, stream=True, timeout=60) as response:
                    response.raise_for_status()
                    with installer.open("wb") as handle:
                        for block in response.iter_content(DOWNLOAD_CHUNK_BYTES):
                            handle.write(block)
            except requests.RequestException as exc:
                raise BootstrapError(
                    f"Installer download failed: {exc}", stage="bootstrap:install"
                ) from exc

            installer.chmod(installer.stat().st_mode | stat.S_IXUSR)
            try:
                subprocess.run(
                    [str(installer), *self.settings.service_installer_args],
                    check=True,
                    capture_output=True,
                )
            except (OSError, subprocess.CalledProcessError) as exc:
                raise BootstrapError(
                    f"Silent install failed: {exc}", stage="bootstrap:install"
                ) from exc

        if not self.is_installed():
            raise BootstrapError(
                f"Installer finished but '{self.settings.service_executable}' is still missing",
                stage="bootstrap:install",
            )
        logger.info("Installed %s", self.settings.service_executable)
        return True

    def _matching_processes(self) -> list[psutil.Process]:
        matches: list[psutil.Process] = []
        for proc in psutil.process_iter(["name"]):
            name = proc.info.get("name") or ""
            if Path(name).stem.lower() == self.process_name:
                matches.append(proc)
        return matches

    def is_running(self) -> bool:
        return bool(self._matching_processes())

    def start(self) -> bool:
        if self.is_running():
            return False

        executable = self.executable_path()
        if executable is None:
            raise BootstrapError(
                f"Cannot start '{self.settings.service_executable}': executable not found",
                stage="bootstrap:start",
            )

        logger.info("Starting %s", executable)
        try:
            subprocess.Popen(
                [str(executable), *self.settings.service_start_args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise BootstrapError(
                f"Failed to spawn {executable}: {exc}", stage="bootstrap:start"
            ) from exc

        time.sleep(max(0.0, self.settings.service_settle_seconds))
        return True

    def stop(self) -> int:
        processes = self._matching_processes()
        for proc in processes:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue

        _, alive = psutil.wait_procs(processes, timeout=STOP_TIMEOUT_SECONDS)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue

        if processes:
            logger.info("Stopped %d %s process(es)", len(processes), self.process_name)
        return len(processes)

    def self_update(self) -> None:
        executable = self.executable_path()
        if executable is None:
            raise BootstrapError(
                "Cannot update: service executable not found", stage="bootstrap:update"
            )
        logger.info("Updating %s", executable)
        try:
            subprocess.run([str(executable), "update"], check=True, capture_output=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise BootstrapError(
                f"Service self-update failed: {exc}", stage="bootstrap:update"
            ) from exc

    def ensure_native_component(self) -> bool:
        source = self.settings.native_component_source
        target = self.settings.native_component_target
        if not source or not target:
            return False

        target_path = Path(target).expanduser()
        if target_path.exists():
            return False

        source_path = Path(source).expanduser()
        if not source_path.is_file():
            raise BootstrapError(
                f"Native component missing at {source_path}", stage="bootstrap:engine"
            )

        target_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source_path, target_path)
        logger.info("Copied native component to %s", target_path)
        return True
