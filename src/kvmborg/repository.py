"""Borg repository operations: validate, create, prune and init."""

import re
from typing import IO, Dict, List, Optional, Sequence

from .exceptions import RepositoryError, RepositoryInvalidError
from .models import ArchiveResult, PruneResult, RetentionPolicy
from .utils import CommandResult, NotificationManager, run_command


PRUNED_ARCHIVE = re.compile(r"^(?:Pruning|Would prune)\s+archive(?:\s*\(\d+/\d+\))?:\s+(\S+)")


class BorgRepository:
    """Thin wrapper over the ``borg`` command line."""

    def __init__(self, config, notifier: NotificationManager):
        self.config = config
        self.notifier = notifier

    def _env(self) -> Optional[Dict[str, str]]:
        if self.config.passphrase:
            return {"BORG_PASSPHRASE": self.config.passphrase}
        return None

    def _borg(self, args: Sequence[str], stdin: Optional[IO] = None) -> CommandResult:
        return run_command([self.config.borg_command] + list(args), env=self._env(), stdin=stdin)

    def validate(self, repo: str) -> None:
        """Confirm ``repo`` is a readable borg repository.

        Raises:
            RepositoryInvalidError: the reference is empty or ``borg info`` failed
        """
        if not repo:
            raise RepositoryInvalidError("No Borg repository specified")

        result = self._borg(["info", repo])
        result.check(RepositoryInvalidError, f"The specified path is not a valid Borg repository: {repo}")
        self.notifier.info(f"Using Borg repository: {repo}")

    def _create_args(self, repo: str, name: str, compression: Optional[str],
                     read_special: bool) -> List[str]:
        args = ["create", "--verbose", "--stats", "--show-rc",
                "--compression", compression or self.config.compression]
        if read_special:
            args.append("--read-special")
        args.append(f"{repo}::{name}")
        return args

    def archive(self, repo: str, name: str, sources: Sequence[str],
                compression: Optional[str] = None, read_special: bool = False) -> ArchiveResult:
        """Create archive ``name`` from files or, with ``read_special``, device nodes.

        Raises:
            RepositoryError: borg create exited non-zero
        """
        self.notifier.info(f"Creating archive {name} from {', '.join(sources)}")
        result = self._borg(self._create_args(repo, name, compression, read_special) + list(sources))
        result.check(RepositoryError, f"Failed to create archive {name}")
        return ArchiveResult(name=name, output=result.stderr or result.stdout)

    def archive_stream(self, repo: str, name: str, stream: IO[bytes],
                       compression: Optional[str] = None) -> ArchiveResult:
        """Create archive ``name`` from a byte stream fed to borg's stdin."""
        self.notifier.info(f"Creating archive {name} from stream")
        result = self._borg(self._create_args(repo, name, compression, False) + ["-"], stdin=stream)
        result.check(RepositoryError, f"Failed to create archive {name}")
        return ArchiveResult(name=name, output=result.stderr or result.stdout)

    def prune(self, repo: str, glob: str, policy: RetentionPolicy) -> PruneResult:
        """Apply ``policy`` to the archives matching ``glob``.

        Raises:
            RepositoryError: borg prune exited non-zero
        """
        self.notifier.info(f"Pruning old backups matching {glob}")
        args = ["prune", "--list", "--show-rc", "--glob-archives", glob] + policy.as_borg_args() + [repo]
        result = self._borg(args)
        result.check(RepositoryError, f"Failed to prune archives matching {glob}")

        output = result.stderr or result.stdout
        pruned = []
        for line in output.splitlines():
            match = PRUNED_ARCHIVE.match(line.strip())
            if match:
                pruned.append(match.group(1))
        return PruneResult(glob=glob, pruned=pruned, output=output)

    def init(self, repo: str, encryption: Optional[str] = None) -> None:
        """Create a new repository with ``encryption`` (configured method by default)."""
        method = encryption or self.config.encryption
        self.notifier.info(f"Initializing Borg repository {repo} ({method})")
        self._borg(["init", "--encryption", method, repo]).check(
            RepositoryError, f"Failed to initialize repository {repo}"
        )
