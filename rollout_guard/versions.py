"""
Semantic versions parsed from image references.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"v(\d+)\.(\d+)\.(\d+)")


@dataclass(frozen=True, order=True)
class ImageVersion:
    """Version triple taken from an image tag."""
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"v{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class VersionCheck:
    """Result of comparing the running image with the requested one."""
    current: Optional[ImageVersion]
    target: Optional[ImageVersion]
    downgrade: bool
    skipped: bool


def parse_image_version(image: str) -> Optional[ImageVersion]:
    """Extract the first ``v<major>.<minor>.<patch>`` in an image reference.

    Returns None when the reference carries no such version.
    """
    match = VERSION_PATTERN.search(image or "")
    if match is None:
        return None
    return ImageVersion(*(int(part) for part in match.groups()))


def is_major_downgrade(current: Optional[ImageVersion], target: Optional[ImageVersion]) -> bool:
    if current is None or target is None:
        return False
    return target.major < current.major


def compare_versions(current_image: str, target_image: str) -> VersionCheck:
    """Compare two image references.

    Only a major-version regression counts as a downgrade; minor and patch
    changes are logged for information. Nothing is compared when either
    version is unknown.
    """
    current = parse_image_version(current_image)
    target = parse_image_version(target_image)

    if current is None or target is None:
        logger.info("Version comparison skipped: no semantic version in one of the images")
        return VersionCheck(current=current, target=target, downgrade=False, skipped=True)

    downgrade = is_major_downgrade(current, target)
    if downgrade:
        logger.warning(f"⚠️ Major version downgrade detected: {current} -> {target}")
    elif target < current:
        logger.info(f"Minor/patch version decrease: {current} -> {target}")
    elif target != current:
        logger.info(f"Version change: {current} -> {target}")
    return VersionCheck(current=current, target=target, downgrade=downgrade, skipped=False)
