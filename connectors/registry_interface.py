from pathlib import Path
from typing import Protocol

from box import Box


class ReleaseInfo(Box):
    """
    Release metadata as returned by an artifact registry. Dot-access dict.
    Keys:
        tag           - release tag, e.g. "v1.2.0"
        name          - display name
        published_at  - ISO 8601 timestamp string
        is_latest     - True for the registry's latest release
        assets        - list of Box(name=..., size=..., url=...)
    """


class ArtifactRegistry(Protocol):
    """
    Interface Protocol for artifact registry clients.
    Implementations raise common.errors.RegistryError when the registry cannot
    be queried.
    """

    def list_releases(self, limit: int = 20) -> list[ReleaseInfo]: ...

    def latest_release(self) -> ReleaseInfo: ...

    def get_release(self, tag: str) -> ReleaseInfo: ...

    def download_asset(self, release: ReleaseInfo, pattern: str, dest_dir: Path) -> Path:
        """
        Download the asset whose name matches ``pattern`` into ``dest_dir``,
        overwriting an existing file. Returns the written path.
        """
        ...

    def check_auth(self) -> None:
        """Raise common.errors.DependencyError if the credentials are not accepted."""
        ...
