import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from order_saga.config import Settings, configure_logging
from order_saga.errors import InvalidOrderError, OrderNotFoundError, ProductNotFoundError
from order_saga.schemas import OrderAccepted, OrderCreate, OrderStatusRead
from order_saga.service import OrderService
from order_saga.wiring import ServiceContainer

logger = logging.getLogger(__name__)


def get_order_service(request: Request) -> OrderService:
    container: Optional[ServiceContainer] = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Order service is not ready")
    return container.order_service


def create_app(settings: Optional[Settings] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = container or ServiceContainer(settings)
        await services.start()
        app.state.container = services
        try:
            yield
        finally:
            await services.stop()
            app.state.container = None

    app = FastAPI(title="Order Saga Service", lifespan=lifespan)

    @app.exception_handler(ProductNotFoundError)
    async def product_not_found_handler(request: Request, exc: ProductNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc), "product_ids": exc.product_ids})

    @app.exception_handler(InvalidOrderError)
    async def invalid_order_handler(request: Request, exc: InvalidOrderError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(OrderNotFoundError)
    async def order_not_found_handler(request: Request, exc: OrderNotFoundError):
        return JSONResponse(status_code=404, content={"detail": "Order not found"})

    @app.post("/api/orders", response_model=OrderAccepted, status_code=202)
    async def create_order(order_data: OrderCreate, service: OrderService = Depends(get_order_service)):
        correlation_id = await service.place_order(order_data)
        return OrderAccepted(correlation_id=correlation_id)

    @app.get("/api/orders/{order_id}/status", response_model=OrderStatusRead)
    async def get_order_status(order_id: str, service: OrderService = Depends(get_order_service)):
        return await service.get_order_status(order_id)

    @app.get("/api/orders/correlation/{correlation_id}", response_model=OrderStatusRead)
    async def get_order_by_correlation(correlation_id: str, service: OrderService = Depends(get_order_service)):
        return await service.get_status_by_correlation(correlation_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-saga"}

    return app


def run() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
