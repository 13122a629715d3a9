# pharmapos/api/router.py
from fastapi import APIRouter
from pharmapos.api import (
    routes_pharmacy_stock,
    routes_pharmacy_sales,
)

api_router = APIRouter()

# Pharmacy
api_router.include_router(routes_pharmacy_stock.router)
api_router.include_router(routes_pharmacy_sales.router)
