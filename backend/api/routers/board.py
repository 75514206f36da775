"""Personnel board layout router."""
from fastapi import APIRouter, Query, Depends
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from boardlib.cache import TTLCache
from ..dependencies import get_db, get_filter_cache, require_auth, _sanitize_500, _logger

router = APIRouter()


class BoardColumn(BaseModel):
    id: Optional[str] = None
    title: str = ''
    groupNumber: Optional[str] = None
    itemIds: List[str] = []
    vacantPosition: Optional[Dict[str, Any]] = None
    linkedTransactionId: Optional[str] = None
    linkedTransactionType: Optional[str] = None
    chainType: Optional[str] = None
    isCompleted: bool = False


class BoardSaveBody(BaseModel):
    year: int
    columns: List[BoardColumn]
    personnelMap: Dict[str, Dict[str, Any]] = {}


@router.get(
    "/api/personnel-board",
    tags=["Board"],
    summary="Load board",
    description="Return the year's lanes as `columns` plus a `personnelMap` keyed by movement-record id.",
)
def load_board(year: int = Query(...), _user: dict = Depends(require_auth)):
    try:
        board = get_db().load_board(year)
    except Exception as e:
        raise _sanitize_500(e, f'load_board/{year}')
    return {"success": True, **board}


@router.post(
    "/api/personnel-board",
    tags=["Board"],
    summary="Save board",
    description=(
        "Persist the whole board in one storage transaction: update linked transactions, "
        "create transactions for new lanes, delete lanes that were removed and rewrite the layout."
    ),
)
def save_board(
    body: BoardSaveBody,
    user: dict = Depends(require_auth),
    cache: TTLCache = Depends(get_filter_cache),
):
    username = user.get('username') or 'system'
    try:
        result = get_db().save_board(
            body.year,
            [c.model_dump() for c in body.columns],
            body.personnelMap,
            username,
        )
    except Exception as e:
        raise _sanitize_500(e, f'save_board/{body.year}')
    cache.clear()
    _logger.warning(
        "AUDIT BOARD_SAVE | user=%s year=%d lanes=%d created=%d updated=%d",
        username, body.year, result['lanesCount'],
        result['createdTransactionsCount'], result['updatedTransactionsCount'],
    )
    return {"success": True, "message": f"บันทึกข้อมูลปี {body.year} สำเร็จ", **result}


@router.delete(
    "/api/personnel-board",
    tags=["Board"],
    summary="Delete board layout",
    description="Remove the year's layout. Transactions referenced by it are kept.",
)
def delete_board(year: int = Query(...), user: dict = Depends(require_auth)):
    try:
        count = get_db().delete_board(year)
    except Exception as e:
        raise _sanitize_500(e, f'delete_board/{year}')
    _logger.warning("AUDIT BOARD_DELETE | user=%s year=%d deleted=%d", user.get('username'), year, count)
    return {"success": True, "message": f"ลบ Board Layout ปี {year} สำเร็จ", "deletedCount": count}
