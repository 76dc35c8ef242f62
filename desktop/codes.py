"""
Access-code generation for codes created on this device.

Codes look like `ACE-7KQM-X2PD-HN4R`: a prefix and three groups of four
symbols from a 32-symbol alphabet without 0/O/1/I.
"""

import logging
import random
import re
import secrets
import warnings

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_GROUPS = 3
CODE_GROUP_LENGTH = 4

_CODE_RE = re.compile(rf"^[A-Z]+(-[{CODE_ALPHABET}]{{{CODE_GROUP_LENGTH}}}){{{CODE_GROUPS}}}$")


class InsecureCodeWarning(UserWarning):
    """Raised as a warning when codes come from a non-cryptographic RNG."""


def _draw(length: int) -> str:
    try:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    except NotImplementedError:
        # os.urandom has no entropy source on this platform.
        logger.warning("No OS randomness source; generating access code with a weak PRNG")
        warnings.warn(
            "Access code generated without a cryptographic random source",
            InsecureCodeWarning,
            stacklevel=3,
        )
        rng = random.Random()
        return "".join(rng.choice(CODE_ALPHABET) for _ in range(length))


def generate_code(prefix: str = "ACE") -> str:
    raw = _draw(CODE_GROUPS * CODE_GROUP_LENGTH)
    groups = [raw[i:i + CODE_GROUP_LENGTH] for i in range(0, len(raw), CODE_GROUP_LENGTH)]
    return "-".join([prefix.strip().upper() or "ACE", *groups])


def is_well_formed(code: str) -> bool:
    return bool(_CODE_RE.match((code or "").strip().upper()))
