from dataclasses import dataclass
from enum import StrEnum, auto

from crosslister.domain.errors import UnsupportedPlatformError


class DispatchMode(StrEnum):
    EXTENSION = auto()  # Posted by the browser extension through the job protocol
    NATIVE = auto()     # Posted inline through the marketplace API


@dataclass(frozen=True)
class PlatformSpec:
    name: str
    mode: DispatchMode
    # Session-based platforms only need a logged-in browser; the others need a
    # stored, recently verified connection before a job may be dispatched.
    requires_credentials: bool = False


PLATFORMS: dict[str, PlatformSpec] = {
    "poshmark": PlatformSpec("poshmark", DispatchMode.EXTENSION),
    "mercari": PlatformSpec("mercari", DispatchMode.EXTENSION, requires_credentials=True),
    "depop": PlatformSpec("depop", DispatchMode.EXTENSION, requires_credentials=True),
    "ebay": PlatformSpec("ebay", DispatchMode.NATIVE, requires_credentials=True),
}

EXTENSION_PLATFORMS = frozenset(
    name for name, spec in PLATFORMS.items() if spec.mode == DispatchMode.EXTENSION
)


def get_platform(name: str) -> PlatformSpec:
    try:
        return PLATFORMS[name]
    except KeyError:
        raise UnsupportedPlatformError(name) from None
