"""
Background image selection per email domain.
Tokens map to frontend assets named fondo_<token>.png.
"""

import random
import logging
from typing import Optional

from access_policy import get_domain

logger = logging.getLogger(__name__)

DOMAIN_BACKGROUNDS = {
    "proxper.com.mx": ["proxper_1", "proxper_2", "proxper_3"],
    "tolkogroup.com": ["tolkogroup_1", "tolkogroup_2", "tolkogroup_3"],
    "naturgy.com": ["naturgy_1", "naturgy_2", "naturgy_3"],
    "biopappel.com": ["biopappel_1", "biopappel_2", "biopappel_3"],
    "crediclub.com": ["crediclub_1", "crediclub_2", "crediclub_3"],
    "cydsa.com": ["cydsa_1", "cydsa_2", "cydsa_3"],
    "nike.com": ["nike_1", "nike_2", "nike_3"],
    "pluxeegroup.com": ["pluxeegroup_1", "pluxeegroup_2", "pluxeegroup_3"],
    "novonordisk.com": ["novonordisk_1", "novonordisk_2", "novonordisk_3"],
}

FALLBACK_BACKGROUNDS = ["default_1", "default_2", "default_3"]


def pick_asset(identity: str, rng: Optional[random.Random] = None) -> str:
    """Random background token for the identity's domain, or a default one."""
    rng = rng or random
    domain = get_domain(identity)
    backgrounds = DOMAIN_BACKGROUNDS.get(domain or "")
    if not backgrounds:
        logger.warning(f"No backgrounds defined for {domain}, using fallback")
        backgrounds = FALLBACK_BACKGROUNDS
    return rng.choice(backgrounds)
