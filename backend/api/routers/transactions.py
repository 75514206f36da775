"""Swap transactions and vacancy assignment router."""
from datetime import datetime
from fastapi import APIRouter, HTTPException, Query, Depends
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from boardlib.cache import TTLCache
from boardlib.errors import NotFoundError, SlotConflictError
from boardlib.reconciler import SWAP_TYPES
from ..dependencies import get_db, get_filter_cache, require_auth, _sanitize_500, _logger

router = APIRouter()

_SINGLE_STEP_TYPES = ('transfer', 'promotion-chain')


class TransactionCreate(BaseModel):
    year: int
    swapDate: datetime
    swapType: str = 'two-way'
    groupName: Optional[str] = None
    groupNumber: Optional[str] = None
    status: str = 'completed'
    isCompleted: bool = False
    notes: Optional[str] = None
    startingPersonnel: Optional[Dict[str, Any]] = None
    swapDetails: List[Dict[str, Any]] = []


class VacancyAssignBody(BaseModel):
    personnelId: str
    slotId: str
    notes: Optional[str] = None


@router.get(
    "/api/swap-transactions",
    tags=["Transactions"],
    summary="List transactions",
    description="Transactions with their movement records, most recently updated first.",
)
def list_transactions(
    year: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    swapType: Optional[str] = Query(None),
):
    try:
        return {"success": True, "data": get_db().list_transactions(year, status, swapType)}
    except Exception as e:
        raise _sanitize_500(e, 'list_transactions')


@router.post(
    "/api/swap-transactions",
    tags=["Transactions"],
    summary="Create transaction",
    description=(
        "Record a swap, transfer or promotion chain. The new transaction is pinned as the "
        "first lane of its year's board."
    ),
)
def create_transaction(
    body: TransactionCreate,
    user: dict = Depends(require_auth),
    cache: TTLCache = Depends(get_filter_cache),
):
    if body.swapType not in SWAP_TYPES:
        raise HTTPException(status_code=400, detail=f"swapType: must be one of {', '.join(SWAP_TYPES)}")
    if body.status not in ('completed', 'active'):
        raise HTTPException(status_code=400, detail="status: must be 'completed' or 'active'")
    min_details = 1 if body.swapType in _SINGLE_STEP_TYPES else 2
    if len(body.swapDetails) < min_details:
        raise HTTPException(
            status_code=400,
            detail=f"swapDetails: '{body.swapType}' needs at least {min_details} record(s)",
        )
    if body.swapType == 'three-way' and len(body.swapDetails) != 3:
        raise HTTPException(status_code=400, detail="swapDetails: 'three-way' needs exactly 3 records")
    username = user.get('username') or 'system'
    try:
        record = get_db().create_transaction(body.model_dump(), username)
    except Exception as e:
        raise _sanitize_500(e, 'create_transaction')
    cache.clear()
    _logger.warning(
        "AUDIT TRANSACTION_CREATE | user=%s id=%s type=%s records=%d",
        username, record['id'], record['swapType'], len(record['swapDetails']),
    )
    return {"success": True, "data": record, "message": 'บันทึกผลการสลับตำแหน่งสำเร็จ'}


@router.get("/api/swap-transactions/{transaction_id}", tags=["Transactions"], summary="Get transaction")
def get_transaction(transaction_id: str):
    try:
        record = get_db().get_transaction(transaction_id)
    except Exception as e:
        raise _sanitize_500(e, f'get_transaction/{transaction_id}')
    if record is None:
        raise HTTPException(status_code=404, detail=f"Transaction {transaction_id} not found")
    return {"success": True, "data": record}


@router.delete("/api/swap-transactions/{transaction_id}", tags=["Transactions"], summary="Delete transaction")
def delete_transaction(
    transaction_id: str,
    user: dict = Depends(require_auth),
    cache: TTLCache = Depends(get_filter_cache),
):
    try:
        count = get_db().delete_transaction(transaction_id)
        if count == 0:
            raise HTTPException(status_code=404, detail=f"Transaction {transaction_id} not found")
    except HTTPException:
        raise
    except Exception as e:
        raise _sanitize_500(e, f'delete_transaction/{transaction_id}')
    cache.clear()
    _logger.warning("AUDIT TRANSACTION_DELETE | user=%s id=%s", user.get('username'), transaction_id)
    return {"success": True, "deleted": count}


def _set_completed(transaction_id: str, completed: bool, user: dict, cache: TTLCache) -> dict:
    try:
        record = get_db().set_completed(transaction_id, completed, user.get('username') or 'system')
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        if str(e).startswith('INCOMPLETE:'):
            raise HTTPException(
                status_code=400,
                detail="Every record must name a person before the transaction can be completed",
            )
        raise _sanitize_500(e, f'complete/{transaction_id}')
    except Exception as e:
        raise _sanitize_500(e, f'complete/{transaction_id}')
    cache.clear()
    _logger.warning(
        "AUDIT TRANSACTION_COMPLETE | user=%s id=%s completed=%s",
        user.get('username'), transaction_id, completed,
    )
    return {"success": True, "data": record}


@router.post("/api/swap-transactions/{transaction_id}/complete", tags=["Transactions"], summary="Mark completed")
def complete_transaction(
    transaction_id: str,
    user: dict = Depends(require_auth),
    cache: TTLCache = Depends(get_filter_cache),
):
    return _set_completed(transaction_id, True, user, cache)


@router.delete("/api/swap-transactions/{transaction_id}/complete", tags=["Transactions"], summary="Clear completed")
def uncomplete_transaction(
    transaction_id: str,
    user: dict = Depends(require_auth),
    cache: TTLCache = Depends(get_filter_cache),
):
    return _set_completed(transaction_id, False, user, cache)


@router.post(
    "/api/vacant-position/assign",
    tags=["Transactions"],
    summary="Assign a person to a vacant slot",
    description="Record a completed transfer of one roster person into a vacant or reserved slot.",
)
def assign_vacancy(
    body: VacancyAssignBody,
    user: dict = Depends(require_auth),
    cache: TTLCache = Depends(get_filter_cache),
):
    username = user.get('username') or 'system'
    try:
        record = get_db().assign_vacancy(body.personnelId, body.slotId, body.notes, username)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SlotConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise _sanitize_500(e, 'assign_vacancy')
    cache.clear()
    _logger.warning(
        "AUDIT VACANCY_ASSIGN | user=%s personnel=%s slot=%s tx=%s",
        username, body.personnelId, body.slotId, record['id'],
    )
    return {"success": True, "data": record}
