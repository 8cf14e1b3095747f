from fastapi import APIRouter

from . import payment, webhook


router = APIRouter()
router.include_router(webhook.router, tags=['webhook'])
router.include_router(payment.router, tags=['payment'])
