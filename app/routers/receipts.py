from uuid import UUID

from fastapi import APIRouter, Depends, Query
from loguru import logger

from app.cache import get_receipt_cache, set_receipt_cache
from app.deps import CurrentUser, can_read_receipts, can_view_receipts_of
from app.errors import ForbiddenError, NotFoundError
from app.ledger import receipt_ledger
from app.schemas import ReceiptPage, ReceiptResponse, ReceiptStats
from app.scopes import ReceiptScope

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.get("/couple/{couple_id}", response_model=ReceiptPage)
async def list_couple_receipts(
    couple_id: UUID,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    current_user: CurrentUser = Depends(can_read_receipts),
) -> ReceiptPage:
    can_view_receipts_of(current_user, couple_id)
    return await receipt_ledger.list_for_couple(couple_id, page, page_size)


@router.get("/vendor/{vendor_id}", response_model=ReceiptPage)
async def list_vendor_receipts(
    vendor_id: UUID,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    current_user: CurrentUser = Depends(can_read_receipts),
) -> ReceiptPage:
    can_view_receipts_of(current_user, vendor_id)
    return await receipt_ledger.list_for_vendor(vendor_id, page, page_size)


@router.get("/stats/couple/{couple_id}", response_model=ReceiptStats)
async def couple_receipt_stats(
    couple_id: UUID,
    current_user: CurrentUser = Depends(can_read_receipts),
) -> ReceiptStats:
    can_view_receipts_of(current_user, couple_id)
    return await receipt_ledger.couple_stats(couple_id)


@router.get("/{id_or_number}", response_model=ReceiptResponse)
async def get_receipt(
    id_or_number: str,
    current_user: CurrentUser = Depends(can_read_receipts),
) -> ReceiptResponse:
    """Look up a receipt by numeric id or by its RCP-... number."""
    cached = await get_receipt_cache(id_or_number)
    if cached is not None:
        logger.debug("Cache hit for receipt {}", id_or_number)
        receipt = ReceiptResponse(**cached)
    else:
        logger.debug("Cache miss for receipt {}", id_or_number)
        receipt = await receipt_ledger.get_receipt(id_or_number)
        if receipt is None:
            raise NotFoundError("Receipt not found", receipt=id_or_number)
        await set_receipt_cache(id_or_number, receipt.model_dump(mode="json"))

    is_party = current_user.id in (receipt.couple_id, receipt.vendor_id)
    if not (is_party or ReceiptScope.ADMIN_READ in current_user.scopes or current_user.is_admin):
        raise ForbiddenError("You can only view your own receipts")
    return receipt
