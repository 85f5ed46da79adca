"""Vehicle inventory MCP server over the bundled snapshot."""

import json
from datetime import date
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from rentalchat.booking.query import SearchQuery, SnapshotInventory, rank
from rentalchat.services.collaborators import load_vehicles
from rentalchat.services.session_store import candidate_to_dict

_VEHICLES_PATH = Path(__file__).resolve().parent / "vehicles.json"

mcp = FastMCP("Rental Inventory", json_response=True)


@mcp.tool()
async def search_vehicles(
    location: str,
    start_date: str,
    end_date: str,
    vehicle_category: str = "",
    max_daily_rate: float = 0.0,
    radius_miles: float = 0.0,
    date_flex_days: int = 0,
    no_deposit_first: bool = False,
    limit: int = 6,
) -> str:
    """Find vehicles available in a city for a date range (YYYY-MM-DD).

    Empty strings and zeros mean "no filter".
    """
    try:
        query = SearchQuery(
            location=location,
            start_date=date.fromisoformat(start_date),
            end_date=date.fromisoformat(end_date),
            vehicle_category=vehicle_category or None,
            max_daily_rate=max_daily_rate or None,
            radius_miles=radius_miles or None,
            date_flex_days=date_flex_days,
            no_deposit_first=no_deposit_first,
            limit=limit,
        )
    except ValueError as e:
        return json.dumps({"error": f"Invalid date: {e}"})
    found = await SnapshotInventory(load_vehicles(_VEHICLES_PATH)).search(query)
    found = rank(found, query.no_deposit_first)[: query.limit]
    return json.dumps({"vehicles": [candidate_to_dict(v) for v in found]}, indent=2)


@mcp.tool()
def get_vehicle(vehicle_id: str) -> str:
    """Get a single vehicle by ID (e.g. phx-suv-4runner)."""
    for v in load_vehicles(_VEHICLES_PATH):
        if v.vehicle_id == vehicle_id:
            return json.dumps(candidate_to_dict(v), indent=2)
    return json.dumps({"error": f"Vehicle not found: {vehicle_id}"})


if __name__ == "__main__":
    mcp.run(transport="stdio")
