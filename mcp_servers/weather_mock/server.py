"""Mock driving-conditions MCP server with canned seasonal data for Arizona cities."""

import datetime as dt
import json

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("Weather Mock", json_response=True)

# (low_f, high_f) by city and season
_CLIMATE = {
    "phoenix": {"winter": (45, 68), "spring": (62, 88), "summer": (84, 108), "fall": (62, 90)},
    "scottsdale": {"winter": (44, 67), "spring": (60, 87), "summer": (82, 106), "fall": (60, 89)},
    "tempe": {"winter": (45, 68), "spring": (61, 88), "summer": (83, 107), "fall": (61, 90)},
    "mesa": {"winter": (44, 67), "spring": (60, 87), "summer": (82, 106), "fall": (60, 89)},
    "tucson": {"winter": (41, 66), "spring": (55, 84), "summer": (76, 101), "fall": (57, 86)},
    "flagstaff": {"winter": (17, 44), "spring": (28, 60), "summer": (50, 81), "fall": (32, 64)},
}


def _season(on: dt.date) -> str:
    if on.month in (12, 1, 2):
        return "winter"
    if on.month in (3, 4, 5):
        return "spring"
    if on.month in (6, 7, 8):
        return "summer"
    return "fall"


@mcp.tool()
def get_conditions(location: str, date: str) -> str:
    """Typical driving conditions for a city on a date (YYYY-MM-DD)."""
    try:
        on = dt.date.fromisoformat(date)
    except ValueError:
        return json.dumps({"error": f"Invalid date: {date}"})
    climate = _CLIMATE.get(location.strip().lower())
    if climate is None:
        return json.dumps({"error": f"No conditions on file for {location}"})
    season = _season(on)
    low, high = climate[season]
    advisories = []
    if high >= 100:
        advisories.append("extreme heat; carry water and check coolant")
    if low <= 32:
        advisories.append("possible ice or snow; consider AWD")
    if season == "summer" and location.strip().lower() != "flagstaff":
        advisories.append("monsoon dust storms possible in the afternoon")
    return json.dumps(
        {
            "location": location,
            "date": on.isoformat(),
            "season": season,
            "low_f": low,
            "high_f": high,
            "advisories": advisories,
        },
        indent=2,
    )


if __name__ == "__main__":
    mcp.run(transport="stdio")
