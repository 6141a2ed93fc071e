from fastapi import APIRouter
from app.api.v1.endpoints import debts, balances, settlements, bridge

api_router = APIRouter()

api_router.include_router(debts.router, prefix="/debts", tags=["debts"])
api_router.include_router(balances.router, prefix="/balances", tags=["balances"])
api_router.include_router(settlements.router, prefix="/settlements", tags=["settlements"])
api_router.include_router(bridge.router, prefix="/bridge", tags=["bridge"])
