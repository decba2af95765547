"""
Flash Sale Service - reservation, settlement and sale administration API
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import get_current_user_id
from .config import Settings, get_settings
from .container import FlashSaleContainer
from .errors import FlashSaleError
from .middleware import get_correlation_id, setup_observability
from .schemas import (
    OrderStatusResponse,
    PurchaseRequest,
    ReservationResponse,
    SaleStatusResponse,
    SaleUpdate,
    SaleUpdateResponse,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def get_container(request: Request) -> FlashSaleContainer:
    return request.app.state.container


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        container = FlashSaleContainer(settings)
        await container.start()
        container.start_worker()
        app.state.container = container

        yield

        # Shutdown
        app.state.container = None
        await container.stop()

    app = FastAPI(
        title="Flash Sale Service",
        description="Flash sale reservations with asynchronous settlement",
        version=settings.version,
        lifespan=lifespan
    )
    app.state.container = None
    app.dependency_overrides[get_settings] = lambda: settings

    setup_observability(app, settings.service_name, settings.version, settings.environment)

    @app.exception_handler(FlashSaleError)
    async def flash_sale_error_handler(request: Request, exc: FlashSaleError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid request"})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None)
        )

    @app.post("/orders", response_model=ReservationResponse)
    async def create_order(
        body: PurchaseRequest,
        request: Request,
        user_id: str = Depends(get_current_user_id),
        container: FlashSaleContainer = Depends(get_container)
    ):
        return await container.purchase_service.create_reservation(
            user_id, str(body.product_id), correlation_id=get_correlation_id(request)
        )

    @app.get("/orders", response_model=List[OrderStatusResponse])
    async def list_orders(
        user_id: str = Depends(get_current_user_id),
        container: FlashSaleContainer = Depends(get_container)
    ):
        return await container.order_reader.list_orders(user_id)

    @app.get("/orders/current", response_model=OrderStatusResponse)
    async def current_order(
        product_id: Optional[str] = Query(default=None),
        user_id: str = Depends(get_current_user_id),
        container: FlashSaleContainer = Depends(get_container)
    ):
        order = await container.order_reader.get_order(user_id, product_id or settings.product_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return order

    @app.get("/sales", response_model=SaleStatusResponse)
    async def sale_status(container: FlashSaleContainer = Depends(get_container)):
        return await container.sale_service.get_status(settings.product_id)

    @app.post("/sales/update", response_model=SaleUpdateResponse)
    async def update_sale(
        body: SaleUpdate,
        container: FlashSaleContainer = Depends(get_container)
    ):
        sale = await container.sale_service.update_sale(
            settings.product_id, body.start_date, body.end_date, body.quantity
        )
        return SaleUpdateResponse(
            flash_sale_id=sale.flash_sale_id,
            product_id=sale.product_id,
            start_date=sale.start_date,
            end_date=sale.end_date,
            quantity=body.quantity
        )

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
