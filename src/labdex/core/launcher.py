"""
Labdex URL launcher

Hands URLs to desktop helpers: a browser opener (``xdg-open`` by default)
and a clipboard tool (``wl-copy`` by default).
"""

import logging
import shlex
import subprocess
from typing import List, Protocol

logger = logging.getLogger(__name__)


class Launcher(Protocol):
    def open_url(self, url: str) -> bool: ...

    def copy_url(self, url: str) -> bool: ...


class SubprocessLauncher:
    """Run the configured helper commands as child processes.

    ``command`` may carry extra arguments (e.g. ``"firefox --new-tab"``);
    the URL is appended as the final argument.
    """

    def __init__(self, command: str = "xdg-open", copy_command: str = "wl-copy"):
        self.command = command
        self.copy_command = copy_command

    def open_url(self, url: str) -> bool:
        """Open *url* detached from this process; return False on failure."""
        return self._spawn(self.command, url, detach=True)

    def copy_url(self, url: str) -> bool:
        """Put *url* on the clipboard; return False on failure."""
        return self._spawn(self.copy_command, url, detach=False)

    @staticmethod
    def _argv(command: str, url: str) -> List[str]:
        return shlex.split(command) + [url]

    def _spawn(self, command: str, url: str, detach: bool) -> bool:
        argv = self._argv(command, url)
        try:
            if detach:
                subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
            else:
                subprocess.run(argv, check=True, timeout=10,
                               stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to run {argv[0]!r} for {url}: {e}")
            return False
        logger.debug(f"Ran {' '.join(argv)}")
        return True
