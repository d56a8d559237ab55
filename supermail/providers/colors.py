"""
Nearest-colour matching against a provider's fixed colour palette.

Backends only accept colours from a small closed set, so caller supplied hex
values are mapped to the closest palette entry by Euclidean RGB distance.
The mapping is one-way; labels read back are never translated to hex.
"""

import math
import re
from typing import Mapping, Optional, Tuple, TypeVar

T = TypeVar('T')

_HEX_COLOR = re.compile(r'^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{3})$')


def hex_to_rgb(value: str) -> Optional[Tuple[int, int, int]]:
    """Parse ``#rrggbb`` or ``#rgb``. Returns None for anything else."""
    match = _HEX_COLOR.match(value.strip())
    if not match:
        return None
    digits = match.group(1)
    if len(digits) == 3:
        digits = ''.join(c * 2 for c in digits)
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def color_distance(a: Tuple[int, int, int], b: Tuple[int, int, int]) -> float:
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def nearest_color(value: Optional[str], palette: Mapping[str, T], default: T) -> T:
    """
    Map a hex colour to the closest palette entry.

    Args:
        value: Caller supplied colour, e.g. ``#ff8800``
        palette: Hex colour -> provider specific colour value
        default: Returned when ``value`` is missing or not a hex colour

    Returns:
        The palette value whose key is nearest to ``value``
    """
    if not value:
        return default
    exact = palette.get(value.strip().lower())
    if exact is not None:
        return exact

    target = hex_to_rgb(value)
    if target is None:
        return default

    closest = default
    min_distance = math.inf
    for palette_hex, palette_value in palette.items():
        rgb = hex_to_rgb(palette_hex)
        if rgb is None:
            continue
        distance = color_distance(target, rgb)
        if distance < min_distance:
            min_distance = distance
            closest = palette_value
    return closest
