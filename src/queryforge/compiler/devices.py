"""Device types inferred from screen resolution.

the tracker's own device_type is a user-agent guess; the screen size is a
better signal. a device_type filter on a table that records
screen_resolution matches on the heuristics below instead of the column,
and device_type_for_resolution() applies the same rules in python.
"""

DEVICE_TYPE_FIELD = "device_type"
RESOLUTION_COLUMN = "screen_resolution"

DEVICE_TYPES = ("mobile", "tablet", "laptop", "desktop", "ultrawide", "watch")
UNKNOWN = "unknown"

# known sizes, matched exactly before the heuristics
COMMON_RESOLUTIONS = {
    "896x414": "mobile",
    "844x390": "mobile",
    "932x430": "mobile",
    "800x360": "mobile",
    "780x360": "mobile",
    "736x414": "mobile",
    "667x375": "mobile",
    "640x360": "mobile",
    "568x320": "mobile",
    "1366x1024": "tablet",
    "1280x800": "tablet",
    "1180x820": "tablet",
    "1024x768": "tablet",
    "1280x720": "tablet",
    "1366x768": "laptop",
    "1440x900": "laptop",
    "1536x864": "laptop",
    "1920x1080": "desktop",
    "2560x1440": "desktop",
    "3840x2160": "desktop",
    "3440x1440": "ultrawide",
    "3840x1600": "ultrawide",
    "5120x1440": "ultrawide",
}


def _dimensions(resolution: str | None) -> tuple[float, float] | None:
    if not resolution or "x" not in resolution:
        return None
    width, _, height = resolution.partition("x")
    try:
        w, h = float(width), float(height)
    except ValueError:
        return None
    if min(w, h) <= 0:
        return None
    return w, h


def device_type_for_resolution(resolution: str | None) -> str:
    """Classify a "<w>x<h>" resolution, `unknown` when it doesn't parse."""
    if resolution in COMMON_RESOLUTIONS:
        return COMMON_RESOLUTIONS[resolution]

    dims = _dimensions(resolution)
    if dims is None:
        return UNKNOWN
    long_side, short_side = max(dims), min(dims)
    aspect = long_side / short_side

    if long_side <= 400 and aspect <= 1.15:
        return "watch"
    if short_side <= 480:
        return "mobile"
    if short_side <= 900:
        return "tablet"
    if aspect >= 2.0 and long_side >= 2560:
        return "ultrawide"
    if long_side <= 1600:
        return "laptop"
    if long_side <= 3000:
        return "desktop"
    return UNKNOWN


def device_type_condition(device_type: str, width: str, height: str) -> str:
    """SQL predicate matching rows whose screen_resolution is of device_type.

    width and height are the dialect's expressions for the two dimensions.
    the rules are tried in the same order as device_type_for_resolution(),
    so every resolution lands in exactly one type. everything in the result
    is a constant from this module, the caller's device type only picks
    which one.
    """
    if device_type not in DEVICE_TYPES:
        raise ValueError(f"Unknown device type: {device_type}")

    long_side = f"greatest({width}, {height})"
    short_side = f"least({width}, {height})"
    aspect = f"({long_side} / {short_side})"
    rules = [
        ("watch", f"{long_side} <= 400 AND {aspect} <= 1.15"),
        ("mobile", f"{short_side} <= 480"),
        ("tablet", f"{short_side} <= 900"),
        ("ultrawide", f"{aspect} >= 2.0 AND {long_side} >= 2560"),
        ("laptop", f"{long_side} <= 1600"),
        ("desktop", f"{long_side} <= 3000"),
    ]

    earlier = []
    for kind, rule in rules:
        if kind == device_type:
            break
        earlier.append(f"NOT ({rule})")
    conditions = [
        f"{RESOLUTION_COLUMN} NOT IN ({_quoted(COMMON_RESOLUTIONS)})",
        f"{width} IS NOT NULL AND {height} IS NOT NULL AND {short_side} > 0",
        *earlier,
        f"({dict(rules)[device_type]})",
    ]
    heuristic = "(" + " AND ".join(conditions) + ")"

    exact = [r for r, kind in COMMON_RESOLUTIONS.items() if kind == device_type]
    if exact:
        return f"({RESOLUTION_COLUMN} IN ({_quoted(exact)}) OR {heuristic})"
    return heuristic


def _quoted(resolutions) -> str:
    return ", ".join(f"'{r}'" for r in resolutions)
