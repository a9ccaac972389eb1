import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import bookings
import catalog
import orders
from auth import get_current_user, require_roles
from database import db, ensure_indexes
from errors import describe_errors
from schemas import AdditionalDetails, Address, BookingPayment, ImageCategory, SessionType, ShippingAddress, TimeSlot
from settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes()
    except Exception:
        logger.exception("Could not ensure MongoDB indexes")
    yield


app = FastAPI(title="Photo Studio API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs(settings.images_dir, exist_ok=True)
app.mount("/images", StaticFiles(directory=settings.images_dir, check_dir=False), name="images")

admin_only = require_roles("admin")


# ----- Envelope & error handling -----

def ok(data: Any = None, **extra: Any) -> Dict[str, Any]:
    body = {"success": True}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def listing(items: List[dict], pagination: Optional[dict] = None) -> Dict[str, Any]:
    body = ok(items, count=len(items))
    if pagination is not None:
        body["pagination"] = pagination
    return body


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": describe_errors(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Server Error"})


# ----- Health -----

@app.get("/")
def read_root():
    return {"message": "Photo Studio API running"}


@app.get("/health")
def health():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": settings.database_name,
        "collections": [],
    }
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----- Auth -----

class RegisterInput(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: Optional[str] = None


class LoginInput(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


class PasswordUpdate(BaseModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class PhotographerFlag(BaseModel):
    is_photographer: bool = True


def token_response(response: Response, user: Dict[str, Any]) -> Dict[str, Any]:
    token = auth.create_access_token(user)
    auth.set_token_cookie(response, token)
    return ok(user, token=token)


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterInput, response: Response):
    user = auth.register_user(payload.name, payload.email, payload.password, payload.role)
    return token_response(response, user)


@app.post("/api/auth/login")
def login(payload: LoginInput, response: Response):
    user = auth.authenticate_user(payload.email, payload.password)
    return token_response(response, user)


@app.get("/api/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return ok(current_user)


@app.put("/api/auth/updateprofile")
def update_profile(payload: ProfileUpdate, current_user: dict = Depends(get_current_user)):
    return ok(auth.update_profile(current_user, payload.model_dump(exclude_unset=True)))


@app.put("/api/auth/updatepassword")
def update_password(payload: PasswordUpdate, response: Response, current_user: dict = Depends(get_current_user)):
    user = auth.update_password(current_user, payload.current_password, payload.new_password)
    return token_response(response, user)


@app.get("/api/auth/logout")
def logout(response: Response, current_user: dict = Depends(get_current_user)):
    auth.clear_token_cookie(response)
    return ok({})


@app.put("/api/auth/users/{user_id}/photographer")
def set_photographer(user_id: str, payload: PhotographerFlag, current_user: dict = Depends(admin_only)):
    return ok(auth.set_photographer(user_id, payload.is_photographer))


# ----- Images -----

class ImageUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[ImageCategory] = None
    tags: Optional[Any] = None
    location: Optional[str] = None
    date_taken: Optional[datetime] = None
    featured: Optional[bool] = None
    in_portfolio: Optional[bool] = None
    is_for_sale: Optional[bool] = None


@app.get("/api/images")
def list_images(request: Request):
    items, pagination = catalog.list_images(request.query_params)
    return listing(items, pagination)


@app.get("/api/images/{image_id}")
def get_image(image_id: str):
    return ok(catalog.get_image(image_id))


@app.post("/api/images", status_code=201)
def upload_image(
    image: UploadFile = File(...),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    current_user: dict = Depends(get_current_user),
):
    # read at most one byte past the limit so oversized files are rejected without buffering them whole
    data = image.file.read(settings.max_upload_bytes + 1)
    fields = {"title": title, "description": description, "category": category, "tags": tags}
    return ok(catalog.upload_image(current_user, image.filename, data, fields))


@app.put("/api/images/{image_id}")
def update_image(image_id: str, payload: ImageUpdate, current_user: dict = Depends(get_current_user)):
    return ok(catalog.update_image(image_id, current_user, payload.model_dump(exclude_unset=True)))


@app.delete("/api/images/{image_id}")
def delete_image(image_id: str, current_user: dict = Depends(get_current_user)):
    catalog.delete_image(image_id, current_user)
    return ok({})


# ----- Import -----

class ImportRequest(BaseModel):
    source_path: Optional[str] = None
    category: ImageCategory = "other"
    tags: Optional[str] = None


class DirectoryCheck(BaseModel):
    directory_path: Optional[str] = None


@app.post("/api/import/portfolio")
def import_portfolio(payload: ImportRequest, current_user: dict = Depends(admin_only)):
    records = catalog.import_portfolio(current_user, payload.source_path, payload.category, payload.tags)
    return listing(records)


@app.post("/api/import/check-directory")
def check_directory(payload: DirectoryCheck, current_user: dict = Depends(admin_only)):
    return ok(catalog.check_directory(payload.directory_path))


# ----- Products -----

class ProductIn(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category: str = "print"
    image_url: Optional[str] = None
    image_id: Optional[str] = None
    featured: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    image_url: Optional[str] = None
    image_id: Optional[str] = None
    featured: Optional[bool] = None


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)


@app.get("/api/products/featured")
def featured_products():
    return listing(catalog.featured_products())


@app.get("/api/products/category/{category_name}")
def products_by_category(category_name: str):
    return listing(catalog.products_by_category(category_name))


@app.get("/api/products")
def list_products(request: Request):
    items, pagination = catalog.list_products(request.query_params)
    return listing(items, pagination)


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    return ok(catalog.get_product(product_id))


@app.post("/api/products", status_code=201)
def create_product(data: ProductIn, current_user: dict = Depends(admin_only)):
    return ok(catalog.create_product(data.model_dump()))


@app.put("/api/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, current_user: dict = Depends(admin_only)):
    return ok(catalog.update_product(product_id, data.model_dump(exclude_unset=True)))


@app.put("/api/products/{product_id}/stock")
def update_stock(product_id: str, data: StockUpdate, current_user: dict = Depends(admin_only)):
    return ok(catalog.update_stock(product_id, data.stock))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(admin_only)):
    catalog.delete_product(product_id)
    return ok({})


# ----- Orders -----

class CartItem(BaseModel):
    product: str
    quantity: int = Field(1, ge=1)


class OrderRequest(BaseModel):
    products: List[CartItem] = Field(default_factory=list)
    shipping_address: Optional[ShippingAddress] = None


class PaymentIntentRequest(BaseModel):
    order_id: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: Optional[str] = None
    tracking_number: Optional[str] = None


@app.post("/api/orders/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(default=None)):
    payload = await request.body()
    return orders.handle_payment_webhook(payload, stripe_signature)


@app.get("/api/orders/myorders")
def my_orders(current_user: dict = Depends(get_current_user)):
    return listing(orders.my_orders(current_user))


@app.post("/api/orders/create-payment-intent")
def create_payment_intent(payload: PaymentIntentRequest, current_user: dict = Depends(get_current_user)):
    result = orders.create_payment_intent(payload.order_id, current_user)
    return ok(**result)


@app.get("/api/orders")
def list_orders(request: Request, current_user: dict = Depends(get_current_user)):
    items, pagination = orders.list_orders(current_user, request.query_params)
    return listing(items, pagination)


@app.post("/api/orders", status_code=201)
def create_order(payload: OrderRequest, current_user: dict = Depends(get_current_user)):
    address = payload.shipping_address.model_dump() if payload.shipping_address else None
    items = [item.model_dump() for item in payload.products]
    return ok(orders.create_order(current_user, items, address))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(get_current_user)):
    return ok(orders.get_order(order_id, current_user))


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, current_user: dict = Depends(admin_only)):
    return ok(orders.update_order_status(order_id, payload.status, payload.tracking_number))


# ----- Bookings -----

class BookingRequest(BaseModel):
    session_type: Optional[SessionType] = None
    date: Optional[datetime] = None
    time_slot: Optional[TimeSlot] = None
    location: Optional[str] = None
    additional_details: Optional[AdditionalDetails] = None
    payment: Optional[BookingPayment] = None
    calendly_event_id: Optional[str] = None
    notes: Optional[str] = None


class BookingUpdate(BaseModel):
    session_type: Optional[SessionType] = None
    date: Optional[datetime] = None
    time_slot: Optional[TimeSlot] = None
    location: Optional[str] = None
    additional_details: Optional[AdditionalDetails] = None
    notes: Optional[str] = None


class BookingStatusUpdate(BaseModel):
    status: Optional[str] = None


class CancelRequest(BaseModel):
    cancellation_reason: Optional[str] = None


class AssignRequest(BaseModel):
    photographer_id: Optional[str] = None


@app.post("/api/bookings/calendly-webhook")
async def calendly_webhook(request: Request, calendly_webhook_signature: Optional[str] = Header(default=None)):
    payload = await request.body()
    bookings.handle_calendar_webhook(payload, calendly_webhook_signature)
    return ok()


@app.get("/api/bookings/mybookings")
def my_bookings(current_user: dict = Depends(get_current_user)):
    return listing(bookings.my_bookings(current_user))


@app.get("/api/bookings")
def list_bookings(request: Request, current_user: dict = Depends(get_current_user)):
    items, pagination = bookings.list_bookings(current_user, request.query_params)
    return listing(items, pagination)


@app.post("/api/bookings", status_code=201)
def create_booking(payload: BookingRequest, current_user: dict = Depends(get_current_user)):
    return ok(bookings.create_booking(current_user, payload.model_dump()))


@app.get("/api/bookings/{booking_id}")
def get_booking(booking_id: str, current_user: dict = Depends(get_current_user)):
    return ok(bookings.get_booking(booking_id, current_user))


@app.put("/api/bookings/{booking_id}")
def update_booking(booking_id: str, payload: BookingUpdate, current_user: dict = Depends(get_current_user)):
    return ok(bookings.update_booking(booking_id, current_user, payload.model_dump(exclude_unset=True)))


@app.put("/api/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, payload: Optional[CancelRequest] = None, current_user: dict = Depends(get_current_user)):
    reason = payload.cancellation_reason if payload else None
    return ok(bookings.cancel_booking(booking_id, current_user, reason))


@app.put("/api/bookings/{booking_id}/status")
def update_booking_status(booking_id: str, payload: BookingStatusUpdate, current_user: dict = Depends(admin_only)):
    return ok(bookings.update_booking_status(booking_id, payload.status))


@app.put("/api/bookings/{booking_id}/assign")
def assign_photographer(booking_id: str, payload: AssignRequest, current_user: dict = Depends(admin_only)):
    return ok(bookings.assign_photographer(booking_id, payload.photographer_id))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
