"""Mock booking-risk MCP server.

Scores a booking with a few fixed rules so the assistant can be exercised
without a real fraud service.
"""

import json

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("Booking Risk Mock", json_response=True)

_HIGH_VALUE_TOTAL = 1500.0
_LONG_RENTAL_DAYS = 21
_PREMIUM_DAILY_RATE = 150.0


@mcp.tool()
def assess_booking_risk(
    session_id: str,
    identity: str,
    vehicle_id: str,
    daily_rate: float,
    rental_days: int,
    total_amount: float,
    verified: bool = False,
) -> str:
    """Score a pending booking. Returns risk_tier (low, medium, high), requires_manual_review and reasons."""
    reasons = []
    score = 0
    if not verified:
        reasons.append("renter identity not verified")
        score += 1
    if not identity or identity.startswith("ip:"):
        reasons.append("anonymous caller")
        score += 1
    if total_amount >= _HIGH_VALUE_TOTAL:
        reasons.append(f"high booking value ({total_amount:.2f})")
        score += 1
    if rental_days >= _LONG_RENTAL_DAYS:
        reasons.append(f"long rental ({rental_days} days)")
        score += 1
    if daily_rate >= _PREMIUM_DAILY_RATE:
        reasons.append(f"premium vehicle {vehicle_id}")
        score += 1

    if score >= 3:
        tier = "high"
    elif score >= 1:
        tier = "medium"
    else:
        tier = "low"
    return json.dumps(
        {
            "session_id": session_id,
            "risk_tier": tier,
            "requires_manual_review": tier == "high",
            "reasons": reasons,
        },
        indent=2,
    )


if __name__ == "__main__":
    mcp.run(transport="stdio")
