"""Loading and lookup of the package catalogue."""

import json
import logging
from pathlib import Path

from pydantic import TypeAdapter

from donate.errors import PackageNotFound
from donate.packages.models import Package

logger = logging.getLogger(__name__)

_catalogue_adapter = TypeAdapter(list[Package])


def parse_packages(raw: str | bytes) -> list[Package]:
    """Parse a JSON catalogue (a list of packages).

    Raises:
        pydantic.ValidationError: On schema violations, including unknown
            perk types
        ValueError: On duplicate package ids
    """
    packages = _catalogue_adapter.validate_json(raw)
    seen: set[int] = set()
    for p in packages:
        if p.id in seen:
            raise ValueError(f"duplicate package id {p.id}")
        seen.add(p.id)
    return packages


def load_packages(path: Path) -> list[Package]:
    """Read the catalogue file configured as ``packages_file``."""
    logger.info(f"Reading package catalogue from {path}")
    packages = parse_packages(path.read_bytes())
    logger.info(
        f"Loaded {len(packages)} packages "
        f"({sum(1 for p in packages if p.subscription)} with subscriptions)"
    )
    return packages


def dump_package(package: Package) -> dict:
    """JSON-compatible snapshot of a package, stored alongside orders."""
    return json.loads(package.model_dump_json())


def find_package(packages: list[Package], package_id: int) -> Package:
    """Find a package by id.

    Raises:
        PackageNotFound: If no package has this id
    """
    for p in packages:
        if p.id == package_id:
            return p
    raise PackageNotFound(f"package {package_id}")
