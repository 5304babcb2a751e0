from __future__ import annotations

from typing import Any, Dict, List, Mapping

from apprun.core.handler_api import API_VERSION, HandlerContext, HandlerMeta, ToolHandler, ToolOutput
from apprun.core.tokens import CapabilityToken

DEFAULT_CITY = "austin"
DEFAULT_VIBE = "outdoors"
MAX_ITEMS = 5

CATALOG: Dict[str, Dict[str, List[str]]] = {
    "austin": {
        "outdoors": ["Lady Bird Lake loop", "Barton Springs dip", "Zilker picnic", "Greenbelt hike", "Sunset at Mount Bonnell"],
        "indoors": ["Blanton Museum", "Pinballz arcade", "BookPeople browse", "Austin Bouldering Project", "IMAX at Bob Bullock"],
        "family": ["Thinkery kids museum", "Zilker Zephyr", "Austin Zoo", "Kite flying at Zilker", "Central Library atrium"],
        "date": ["Wine at South Congress", "Paddle board at sunset", "Alamo Drafthouse", "Eberly dinner", "Mozart's coffee"],
    },
    "san francisco": {
        "outdoors": ["Crissy Field walk", "Lands End trail", "Golden Gate Park bikes", "Twin Peaks sunset", "Ocean Beach bonfire"],
        "indoors": ["Exploratorium", "SF MOMA", "Yerba Buena ice rink", "Archery at Golden Gate Park", "Alcatraz night tour"],
        "family": ["California Academy of Sciences", "Children's Creativity Museum", "Cable Car ride", "Aquarium by the Bay", "Dolores Park picnic"],
        "date": ["Ferry Building oysters", "Painted Ladies sunset", "Foreign Cinema", "Bike to Sausalito", "Marina stroll"],
    },
}


class ActivitiesLookup(ToolHandler):
    """Local activity catalog. Needs no external credential."""

    def meta(self) -> HandlerMeta:
        return HandlerMeta(
            name="activities.lookup",
            api_version=API_VERSION,
            handler_version="0.1.0",
            capability="activities.read",
            provider=None,
            outputs=("items",),
            primary_output="items",
            description="Ranked local activities for a city and vibe.",
        )

    def invoke(self, token: CapabilityToken, args: Mapping[str, Any], ctx: HandlerContext) -> ToolOutput:
        self.verify_token(token, ctx)
        city = str(args.get("city") or "").strip().lower()
        vibe = str(args.get("vibe") or DEFAULT_VIBE).strip().lower()
        catalog = CATALOG.get(city) or CATALOG[DEFAULT_CITY]
        names = catalog.get(vibe) or catalog[DEFAULT_VIBE]
        items = [
            {"rank": rank, "name": name, "where": city or DEFAULT_CITY, "vibe": vibe}
            for rank, name in enumerate(names[: _limit(args.get("limit"))], start=1)
        ]
        return ToolOutput(fields={"items": items})


def _limit(value: Any) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return MAX_ITEMS
    if limit == 0:
        return MAX_ITEMS
    return max(1, min(limit, MAX_ITEMS))
