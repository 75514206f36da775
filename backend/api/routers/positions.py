"""Reconciled position listing, column filters and autocomplete."""
import re
from fastapi import APIRouter, HTTPException, Query, Depends
from typing import Optional
from boardlib.cache import TTLCache
from boardlib.column_filters import compute_column_filters
from boardlib.errors import MalformedTransactionError
from boardlib.reconciler import STATUS_FILTERS, SWAP_TYPE_FILTERS, ListingQuery, build_listing
from ..dependencies import get_db, get_filter_cache, current_fiscal_year, _sanitize_500, _logger
from ..types import FilterOptionList, SlotList

router = APIRouter()

_DIGITS_ONLY = re.compile(r'^\d+$')


def _parse_pos_code(value: Optional[str]) -> Optional[int]:
    """'all' (or nothing) means no filter; anything else must be an integer id."""
    if value is None or value == '' or value == 'all':
        return None
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"posCodeId: must be an integer or 'all' (got '{value}')")


def _listing_query(unit, posCodeId, status, swapType, year, search='', page=0, pageSize=10) -> ListingQuery:
    if status not in STATUS_FILTERS:
        raise HTTPException(status_code=400, detail=f"status: must be one of {', '.join(STATUS_FILTERS)}")
    if swapType not in SWAP_TYPE_FILTERS:
        raise HTTPException(status_code=400, detail=f"swapType: must be one of {', '.join(SWAP_TYPE_FILTERS)}")
    return ListingQuery(
        year=year if year is not None else current_fiscal_year(),
        unit=unit or 'all',
        pos_code_id=_parse_pos_code(posCodeId),
        status=status,
        swap_type=swapType,
        search=search or '',
        page=page,
        page_size=pageSize,
    )


def _filter_options(db, year: int) -> dict:
    return {'units': db.get_units(year), 'positionCodes': db.get_pos_codes()}


@router.get(
    "/api/reconciled-positions",
    tags=["Positions"],
    summary="Reconciled position listing",
    description=(
        "Merge the year's roster with its completed movements. Returns one page of rows, "
        "the total count, a summary over the whole filtered set and the filter options. "
        "`filtersOnly=true` returns only the filter options."
    ),
)
def get_reconciled_positions(
    unit: str = Query('all'),
    posCodeId: Optional[str] = Query('all'),
    status: str = Query('all'),
    swapType: str = Query('all'),
    year: Optional[int] = Query(None, description="Buddhist-era year, defaults to the current one"),
    search: str = Query(''),
    page: int = Query(0, ge=0),
    pageSize: int = Query(10, ge=1, le=1000),
    filtersOnly: bool = Query(False),
):
    query = _listing_query(unit, posCodeId, status, swapType, year, search, page, pageSize)
    db = get_db()
    try:
        if filtersOnly:
            return {"success": True, "data": {"filters": _filter_options(db, query.year)}}
        data = build_listing(db, query)
        data["filters"] = _filter_options(db, query.year)
        return {"success": True, "data": data}
    except MalformedTransactionError as e:
        _logger.warning("Malformed transaction %s: %s", e.transaction_id, e)
        raise HTTPException(status_code=409, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        raise _sanitize_500(e, 'reconciled_positions')


@router.get(
    "/api/reconciled-positions/filters",
    tags=["Positions"],
    summary="Column filter options",
    description=(
        "Value-frequency tables for the listing's columns, computed over every row the "
        "given filters select. Cached per filter combination; cache hits carry `cached: true`."
    ),
)
def get_column_filters(
    unit: str = Query('all'),
    posCodeId: Optional[str] = Query('all'),
    status: str = Query('all'),
    swapType: str = Query('all'),
    year: Optional[int] = Query(None),
    cache: TTLCache = Depends(get_filter_cache),
):
    query = _listing_query(unit, posCodeId, status, swapType, year)
    key = query.cache_key()
    hit = cache.get(key)
    if hit is not None:
        return {"success": True, "data": hit, "cached": True}
    try:
        data: dict[str, FilterOptionList] = compute_column_filters(get_db(), query)
    except MalformedTransactionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise _sanitize_500(e, 'column_filters')
    cache.set(key, data)
    return {"success": True, "data": data}


def _suggestion(p: dict, term: str) -> dict:
    display = ' '.join(part for part in (p.get('rank'), p.get('fullName')) if part)
    subtitle_parts = [p.get('position'), p.get('unit')]
    if p.get('positionNumber'):
        subtitle_parts.append(f"#{p['positionNumber']}")
    pos_code = p.get('posCodeMaster')
    return {
        "id": p['id'],
        "label": display or 'ไม่ระบุชื่อ',
        "subtitle": ' · '.join(part for part in subtitle_parts if part),
        "type": "personnel",
        "posCode": f"{pos_code['id']} - {pos_code['name']}" if pos_code else None,
        "searchText": term,
        "originalData": {
            "fullName": p.get('fullName'),
            "rank": p.get('rank'),
            "position": p.get('position'),
            "unit": p.get('unit'),
            "positionNumber": p.get('positionNumber'),
        },
    }


@router.get(
    "/api/reconciled-positions/autocomplete",
    tags=["Positions"],
    summary="Search suggestions",
    description="Roster suggestions for queries of at least two characters.",
)
def autocomplete(
    q: str = Query(''),
    year: Optional[int] = Query(None),
    limit: int = Query(15, ge=1, le=100),
):
    term = (q or '').strip()
    if len(term) < 2:
        return {"success": True, "data": {"suggestions": []}}
    try:
        matches: SlotList = get_db().search_slots(year or current_fiscal_year(), term, limit)
    except Exception as e:
        raise _sanitize_500(e, 'autocomplete')
    suggestions = [_suggestion(p, term) for p in matches]
    if _DIGITS_ONLY.match(term):
        suggestions.insert(0, {
            "id": f"pos-{term}",
            "label": f"เลขตำแหน่ง: {term}",
            "subtitle": 'ค้นหาตามเลขตำแหน่ง',
            "type": "position_number",
            "posCode": None,
            "searchText": term,
            "originalData": None,
        })
    return {
        "success": True,
        "data": {"suggestions": suggestions, "query": term, "total": len(suggestions)},
    }
