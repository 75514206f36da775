"""Master data router: position codes and units."""
from fastapi import APIRouter, Query
from typing import Optional
from ..dependencies import get_db, current_fiscal_year, _sanitize_500

router = APIRouter()


@router.get(
    "/api/pos-codes",
    tags=["Master Data"],
    summary="List position codes",
    description="Position codes ordered by id; a lower id is a higher rank.",
)
def get_pos_codes():
    try:
        return {"success": True, "data": get_db().get_pos_codes()}
    except Exception as e:
        raise _sanitize_500(e, 'pos_codes')


@router.get(
    "/api/units",
    tags=["Master Data"],
    summary="List units",
    description="Distinct units of the year's active roster.",
)
def get_units(year: Optional[int] = Query(None)):
    try:
        return {"success": True, "data": get_db().get_units(year or current_fiscal_year())}
    except Exception as e:
        raise _sanitize_500(e, 'units')
