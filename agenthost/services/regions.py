"""Logical region names to Hetzner Cloud location codes."""

import logging

logger = logging.getLogger(__name__)

REGION_LOCATIONS: dict[str, str] = {
    "us-east": "ash",
    "us-west": "hil",
    "eu-central": "nbg1",
    "eu-west": "fsn1",
    "eu-north": "hel1",
    "ap-southeast": "sin",
}

DEFAULT_LOCATION = "ash"


def resolve_location(region: str | None) -> str:
    """Map a logical region to a provider location.

    Unknown or empty regions fall back to DEFAULT_LOCATION instead of failing.
    """
    if region and region in REGION_LOCATIONS:
        return REGION_LOCATIONS[region]
    logger.info("Unknown region %r, using default location %s", region, DEFAULT_LOCATION)
    return DEFAULT_LOCATION
