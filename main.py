import os
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pymongo.database import Database
from pymongo.errors import ConnectionFailure
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

import catalog
import config
from auth import admin_out, authenticate, authorize_registration, issue_token, register_admin, require_admin
from database import connection, ensure_indexes, get_db, to_object_id
from errors import AppError, AuthError, NotFoundError, UpstreamError, ValidationError
from ingestion import IMAGE_RULE, ProductIngestionPipeline, oversized_detail
from logging_config import add_context, clear_context, configure_logging, get_logger
from orders import OrderFulfillmentService, dashboard
from responses import envelope, error_response
from schemas import AdminLogin, AdminRegister, StatusUpdate, Token
from storage import ImageFile, ImageSink, get_image_sink

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    get_image_sink()
    try:
        await run_in_threadpool(ensure_indexes, connection.db)
    except ConnectionFailure as exc:
        logger.error("index_setup_failed", error=str(exc))
    yield
    connection.close()


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if config.IMAGE_STORAGE == "local":
    app.mount(
        config.IMAGE_URL_PREFIX,
        StaticFiles(directory=config.UPLOAD_DIR, check_dir=False),
        name="images",
    )


@app.middleware("http")
async def request_context(request: Request, call_next):
    add_context(
        request_id=request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12],
        method=request.method,
        path=request.url.path,
    )
    try:
        return await call_next(request)
    finally:
        clear_context()


# Error handlers
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("request_failed", error=exc.message)
    response = error_response(exc.status_code, exc.message, exc.to_data())
    if isinstance(exc, AuthError):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"] if part != "body")
        details.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return error_response(400, "Validation failed", {"details": details})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(ConnectionFailure)
async def store_unavailable_handler(request: Request, exc: ConnectionFailure):
    logger.error("store_unavailable", error=str(exc))
    err = UpstreamError("Database unavailable, please retry")
    return error_response(err.status_code, err.message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error")
    message = str(exc) if config.is_development() else "Internal server error"
    return error_response(500, message)


# Dependencies
def get_pipeline(db: Database = Depends(get_db), sink: ImageSink = Depends(get_image_sink)) -> ProductIngestionPipeline:
    return ProductIngestionPipeline(db, sink)


def get_order_service(db: Database = Depends(get_db)) -> OrderFulfillmentService:
    return OrderFulfillmentService(db)


async def read_submission(request: Request) -> Tuple[dict, List[ImageFile]]:
    """Split a multipart form into text fields and the files sent as ``images``."""
    fields = {}
    uploads = []
    async with request.form() as form:
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if key == "images" and value.filename:
                    uploads.append(value)
            else:
                fields[key] = value
        if len(uploads) > config.MAX_IMAGES:
            raise ValidationError(f"Too many files. Maximum {config.MAX_IMAGES} images allowed.")
        oversized = [
            oversized_detail(index, u.filename)
            for index, u in enumerate(uploads)
            if u.size is not None and u.size > config.MAX_IMAGE_BYTES
        ]
        if oversized:
            raise ValidationError(IMAGE_RULE, oversized)
        images = [
            ImageFile(filename=u.filename, content_type=u.content_type or "", data=await u.read())
            for u in uploads
        ]
    return fields, images


@app.get("/")
def read_root():
    return {"message": "Storefront backend is running"}


# Auth
@app.post("/api/auth/register", status_code=201)
def register(
    payload: AdminRegister,
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
    db: Database = Depends(get_db),
):
    authorize_registration(db, authorization)
    admin = register_admin(db, payload)
    return envelope("Admin account created successfully", admin.model_dump())


@app.post("/api/auth/login")
def login(payload: AdminLogin, db: Database = Depends(get_db)):
    admin = authenticate(db, payload.username, payload.password)
    token = Token(token=issue_token(admin), admin=admin_out(admin))
    return envelope("Login successful", token.model_dump())


@app.get("/api/auth/profile")
def profile(identity: dict = Depends(require_admin), db: Database = Depends(get_db)):
    oid = to_object_id(identity["id"])
    admin = db["admin"].find_one({"_id": oid}) if oid else None
    if not admin:
        raise NotFoundError("Admin not found")
    return envelope("Profile fetched successfully", admin_out(admin).model_dump())


# Catalog
@app.get("/api/products")
def list_products(request: Request, db: Database = Depends(get_db)):
    data = catalog.list_products(db, request.query_params)
    return envelope("Products fetched successfully", data)


@app.get("/api/products/categories")
def list_categories(db: Database = Depends(get_db)):
    return envelope("Categories fetched successfully", catalog.list_categories(db))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = catalog.get_product(db, product_id)
    if not product:
        raise NotFoundError("Product not found")
    return envelope("Product fetched successfully", product)


@app.post("/api/products", status_code=201)
async def create_product(
    request: Request,
    identity: dict = Depends(require_admin),
    pipeline: ProductIngestionPipeline = Depends(get_pipeline),
):
    fields, images = await read_submission(request)
    product, stored = await run_in_threadpool(pipeline.create, fields, images)
    return envelope(f"Product created successfully with {stored} images", product)


@app.put("/api/products/{product_id}")
async def update_product(
    product_id: str,
    request: Request,
    identity: dict = Depends(require_admin),
    pipeline: ProductIngestionPipeline = Depends(get_pipeline),
):
    fields, images = await read_submission(request)
    product, stored = await run_in_threadpool(pipeline.update, product_id, fields, images)
    suffix = f" with {stored} new images" if images else ""
    return envelope(f"Product updated successfully{suffix}", product)


@app.delete("/api/products/{product_id}")
def delete_product(
    product_id: str,
    identity: dict = Depends(require_admin),
    pipeline: ProductIngestionPipeline = Depends(get_pipeline),
):
    pipeline.delete(product_id)
    return envelope("Product deleted successfully")


# Orders
@app.post("/api/orders", status_code=201)
def create_order(payload: Optional[dict] = Body(default=None), service: OrderFulfillmentService = Depends(get_order_service)):
    order = service.create(payload)
    return envelope("Order created successfully", order)


@app.get("/api/orders")
def list_orders(
    request: Request,
    identity: dict = Depends(require_admin),
    service: OrderFulfillmentService = Depends(get_order_service),
):
    return envelope("Orders fetched successfully", service.list_orders(request.query_params))


@app.get("/api/orders/stats/summary")
def order_stats(identity: dict = Depends(require_admin), service: OrderFulfillmentService = Depends(get_order_service)):
    return envelope("Order statistics fetched successfully", service.stats())


@app.get("/api/orders/{order_id}")
def get_order(
    order_id: str,
    identity: dict = Depends(require_admin),
    service: OrderFulfillmentService = Depends(get_order_service),
):
    return envelope("Order fetched successfully", service.get(order_id))


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    identity: dict = Depends(require_admin),
    service: OrderFulfillmentService = Depends(get_order_service),
):
    order = service.set_status(order_id, payload.status)
    logger.info("order_status_updated_by", admin=identity.get("username"), order_id=order_id)
    return envelope("Order status updated successfully", order)


# Admin
@app.get("/api/admin/dashboard")
def admin_dashboard(identity: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return envelope("Dashboard fetched successfully", dashboard(db))


@app.get("/api/admin/products")
def admin_products(request: Request, identity: dict = Depends(require_admin), db: Database = Depends(get_db)):
    data = catalog.list_products(db, request.query_params, include_inactive=True)
    return envelope("Products fetched successfully", data)


@app.get("/api/admin/orders")
def admin_orders(
    request: Request,
    identity: dict = Depends(require_admin),
    service: OrderFulfillmentService = Depends(get_order_service),
):
    return envelope("Orders fetched successfully", service.list_orders(request.query_params))


@app.patch("/api/admin/orders/{order_id}/status")
def admin_update_order_status(
    order_id: str,
    payload: StatusUpdate,
    identity: dict = Depends(require_admin),
    service: OrderFulfillmentService = Depends(get_order_service),
):
    return update_order_status(order_id, payload, identity, service)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
