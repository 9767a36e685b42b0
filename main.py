import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database
from pymongo.errors import PyMongoError

import bookings
import identity
import properties
from config import configure_logging, settings
from database import ensure_indexes, get_client, get_db, serialize
from errors import Forbidden, MarketplaceError
from invoice import render_invoice
from schemas import (
    BookingCreate,
    CancelRequest,
    Identity,
    LoginRequest,
    PaymentRequest,
    PropertyCreate,
    PropertyUpdate,
    ReasonRequest,
    Role,
    SearchFilters,
    SignupRequest,
    UploadIdRequest,
)
from security import create_access_token
from trends import estimate_trend

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = get_client()[settings.DATABASE_NAME]
    try:
        ensure_indexes(db)
        bookings.reconcile_property_sync(db)
    except PyMongoError as exc:
        logger.error("database_startup_failed", error=str(exc))
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error handling ----------
@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_failed",
        kind=exc.kind,
        status_code=exc.status_code,
        detail=exc.message,
        path=request.url.path,
        method=request.method,
    )
    content = {"success": False, "message": exc.message, "kind": exc.kind}
    content.update(exc.extra)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("request_invalid", path=request.url.path, method=request.method)
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder(
            {
                "success": False,
                "message": "Invalid request data",
                "kind": "validation_error",
                "errors": exc.errors(),
            }
        ),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(
        "unexpected_exception",
        error=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal Server Error", "kind": "internal_error"},
    )


# ---------- Auth dependencies ----------
bearer = HTTPBearer(auto_error=False)


def get_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Optional[str]:
    return credentials.credentials if credentials else None


def current_identity(
    token: Optional[str] = Depends(get_token), db: Database = Depends(get_db)
) -> Identity:
    return identity.resolve_identity(db, token)


def optional_identity(
    token: Optional[str] = Depends(get_token), db: Database = Depends(get_db)
) -> Optional[Identity]:
    if not token:
        return None
    try:
        return identity.resolve_identity(db, token)
    except MarketplaceError as exc:
        logger.info("optional_auth_ignored", kind=exc.kind)
        return None


def landlord_identity(caller: Identity = Depends(current_identity)) -> Identity:
    if caller.role not in ("landlord", "admin"):
        raise Forbidden("Access denied. Landlord privileges required.")
    return caller


def admin_identity(caller: Identity = Depends(current_identity)) -> Identity:
    identity.require_admin(caller)
    return caller


def require_verified(caller: Identity) -> None:
    if not settings.REQUIRE_VERIFICATION or caller.is_admin or caller.is_verified:
        return
    raise Forbidden(
        "Account verification required. Please upload your ID proof and wait for admin approval.",
        verification_status=caller.verification_status,
    )


def user_summary(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "phone": user["phone"],
        "role": user["role"],
        "avatar": user.get("avatar"),
        "is_verified": user.get("is_verified", False),
        "verification_status": user.get("verification_status"),
    }


# ---------- Root & Health ----------
@app.get("/")
def read_root():
    return {
        "message": "RentBase API - Rental marketplace with approval workflow",
        "version": settings.APP_VERSION,
        "endpoints": {
            "auth": "/api/auth",
            "properties": "/api/properties",
            "users": "/api/users",
            "admin": "/api/admin",
            "bookings": "/api/bookings",
        },
    }


@app.get("/health")
def health(db: Database = Depends(get_db)):
    response = {"backend": "running", "database": "unavailable", "database_name": db.name}
    try:
        db.command("ping")
        response["database"] = "connected"
    except PyMongoError as exc:
        response["database"] = f"error: {str(exc)[:50]}"
    return response


# ---------- Auth ----------
@app.post("/api/auth/signup", status_code=201)
def signup(req: SignupRequest, db: Database = Depends(get_db)):
    user = identity.register_user(
        db, req.name, req.email, req.password, req.phone, role_hint=req.user_type
    )
    token = create_access_token(str(user["_id"]))
    return {
        "success": True,
        "message": "Account created successfully",
        "token": token,
        "user": user_summary(user),
    }


@app.post("/api/auth/login")
def login(req: LoginRequest, db: Database = Depends(get_db)):
    token, user = identity.authenticate(db, req.email, req.password)
    return {
        "success": True,
        "message": "Login successful",
        "token": token,
        "user": user_summary(user),
    }


@app.get("/api/auth/me")
def me(caller: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    return {"success": True, "user": serialize(identity.get_profile(db, caller.id))}


@app.post("/api/auth/upload-id")
def upload_id(
    req: UploadIdRequest,
    caller: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    user = identity.submit_verification_document(
        db, caller.id, req.document_type, req.document_number, req.document_base64
    )
    return {
        "success": True,
        "message": "ID proof uploaded successfully. Awaiting admin approval.",
        "verification_status": user["verification_status"],
    }


# ---------- Properties ----------
@app.get("/api/properties")
def list_properties(
    status: str = "available",
    city: Optional[str] = None,
    type: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    search: Optional[str] = None,
    sort: str = "newest",
    page: int = 1,
    limit: int = 10,
    caller: Optional[Identity] = Depends(optional_identity),
    db: Database = Depends(get_db),
):
    result = properties.list_properties(
        db,
        status=status,
        city=city,
        property_type=type,
        min_price=min_price,
        max_price=max_price,
        q=search,
        sort=sort,
        page=page,
        limit=limit,
        viewer_id=caller.id if caller else None,
    )
    return {
        "success": True,
        "count": len(result["items"]),
        "total": result["total"],
        "page": result["page"],
        "pages": result["pages"],
        "properties": [serialize(p) for p in result["items"]],
    }


@app.get("/api/properties/approved")
def search_properties(
    zipcode: Optional[str] = None,
    city: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    bedrooms: Optional[int] = None,
    type: Optional[str] = None,
    caller: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    filters = SearchFilters(
        zipcode=zipcode,
        city=city,
        min_price=min_price,
        max_price=max_price,
        bedrooms=bedrooms,
        type=type,
    )
    found = properties.search(db, filters)
    return {
        "success": True,
        "count": len(found),
        "properties": [serialize(p) for p in found],
        "filters": filters.model_dump(),
    }


@app.get("/api/properties/my-properties")
def my_properties(caller: Identity = Depends(landlord_identity), db: Database = Depends(get_db)):
    owned = properties.list_owner_properties(db, caller)
    return {"success": True, "count": len(owned), "properties": [serialize(p) for p in owned]}


@app.get("/api/properties/rental-trends/{zipcode}")
def rental_trends(zipcode: str, db: Database = Depends(get_db)):
    return {"success": True, **estimate_trend(db, zipcode)}


@app.get("/api/properties/{property_id}")
def get_property(
    property_id: str,
    caller: Optional[Identity] = Depends(optional_identity),
    db: Database = Depends(get_db),
):
    prop = properties.get_property(db, property_id, viewer_id=caller.id if caller else None)
    return {"success": True, "property": serialize(prop)}


@app.post("/api/properties", status_code=201)
def create_property(
    req: PropertyCreate,
    caller: Identity = Depends(landlord_identity),
    db: Database = Depends(get_db),
):
    require_verified(caller)
    prop = properties.submit_property(db, caller, req)
    return {
        "success": True,
        "message": "Property submitted successfully. Awaiting admin approval.",
        "property": serialize(prop),
    }


@app.put("/api/properties/{property_id}")
def update_property(
    property_id: str,
    req: PropertyUpdate,
    caller: Identity = Depends(landlord_identity),
    db: Database = Depends(get_db),
):
    prop = properties.update_property(db, caller, property_id, req)
    return {"success": True, "message": "Property updated successfully", "property": serialize(prop)}


@app.delete("/api/properties/{property_id}")
def delete_property(
    property_id: str,
    caller: Identity = Depends(landlord_identity),
    db: Database = Depends(get_db),
):
    properties.delete_property(db, caller, property_id)
    return {"success": True, "message": "Property deleted successfully"}


@app.post("/api/properties/{property_id}/favorite")
def toggle_favorite(
    property_id: str,
    caller: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    favorited = properties.toggle_favorite(db, property_id, caller.id)
    return {
        "success": True,
        "message": "Added to favorites" if favorited else "Removed from favorites",
        "is_favorited": favorited,
    }


# ---------- Bookings ----------
@app.post("/api/bookings", status_code=201)
def create_booking(
    req: BookingCreate,
    caller: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    require_verified(caller)
    booking = bookings.create_booking(db, caller, req)
    return {
        "success": True,
        "message": "Booking created successfully",
        "booking": serialize(bookings.populate(db, booking)),
    }


@app.get("/api/bookings/my-bookings")
def my_bookings(caller: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    found = bookings.list_renter_bookings(db, caller)
    return {"success": True, "count": len(found), "bookings": [serialize(b) for b in found]}


@app.get("/api/bookings/landlord-bookings")
def landlord_bookings(caller: Identity = Depends(landlord_identity), db: Database = Depends(get_db)):
    found = bookings.list_landlord_bookings(db, caller)
    return {"success": True, "count": len(found), "bookings": [serialize(b) for b in found]}


@app.get("/api/bookings/property/{property_id}")
def property_bookings(
    property_id: str,
    caller: Identity = Depends(landlord_identity),
    db: Database = Depends(get_db),
):
    found = bookings.list_property_bookings(db, caller, property_id)
    return {"success": True, "count": len(found), "bookings": [serialize(b) for b in found]}


@app.get("/api/bookings/{booking_id}/invoice")
def booking_invoice(
    booking_id: str,
    caller: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    booking, prop, renter, landlord = bookings.get_invoice_data(db, caller, booking_id)
    pdf = render_invoice(booking, prop, renter, landlord)
    reference = booking.get("booking_reference") or str(booking["_id"])
    logger.info("invoice_rendered", booking_id=booking_id, size=len(pdf))
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename=booking-invoice-{reference}.pdf"},
    )


@app.get("/api/bookings/{booking_id}")
def get_booking(
    booking_id: str,
    caller: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    return {"success": True, "booking": serialize(bookings.get_booking(db, caller, booking_id))}


@app.put("/api/bookings/{booking_id}/confirm")
def confirm_booking(
    booking_id: str,
    caller: Identity = Depends(landlord_identity),
    db: Database = Depends(get_db),
):
    booking = bookings.confirm_booking(db, caller, booking_id)
    return {"success": True, "message": "Booking confirmed successfully", "booking": serialize(booking)}


@app.put("/api/bookings/{booking_id}/reject")
def reject_booking(
    booking_id: str,
    req: Optional[ReasonRequest] = None,
    caller: Identity = Depends(landlord_identity),
    db: Database = Depends(get_db),
):
    booking = bookings.reject_booking(db, caller, booking_id, req.reason if req else None)
    return {"success": True, "message": "Booking rejected", "booking": serialize(booking)}


@app.put("/api/bookings/{booking_id}/complete")
def complete_booking(
    booking_id: str,
    caller: Identity = Depends(landlord_identity),
    db: Database = Depends(get_db),
):
    booking = bookings.complete_booking(db, caller, booking_id)
    return {"success": True, "message": "Booking completed", "booking": serialize(booking)}


@app.put("/api/bookings/{booking_id}/cancel")
def cancel_booking(
    booking_id: str,
    req: Optional[CancelRequest] = None,
    caller: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    booking = bookings.cancel_booking(db, caller, booking_id, req.cancellation_reason if req else None)
    return {"success": True, "message": "Booking cancelled successfully", "booking": serialize(booking)}


@app.post("/api/bookings/{booking_id}/payment")
def record_payment(
    booking_id: str,
    req: PaymentRequest,
    caller: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    booking = bookings.record_payment(
        db, caller, booking_id, req.amount, req.payment_method, req.transaction_id
    )
    return {
        "success": True,
        "message": "Payment processed successfully",
        "booking": serialize(booking),
        "transaction_id": booking["transaction_id"],
    }


# ---------- Users ----------
@app.get("/api/users/search")
def search_users(
    query: Optional[str] = None,
    user_type: Optional[Role] = Query(None, alias="userType"),
    caller: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    found = identity.search_users(db, query, user_type)
    return {"success": True, "count": len(found), "users": [serialize(u) for u in found]}


@app.get("/api/users/favorites")
def my_favorites(caller: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    favorites = identity.list_favorites(db, caller.id)
    return {"success": True, "count": len(favorites), "favorites": [serialize(p) for p in favorites]}


@app.get("/api/users/stats")
def my_stats(caller: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    return {"success": True, "stats": identity.user_stats(db, caller)}


@app.delete("/api/users/account")
def delete_account(caller: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    identity.delete_user(db, caller, caller.id)
    return {"success": True, "message": "Account deleted successfully"}


# ---------- Admin ----------
@app.get("/api/admin/stats")
def admin_stats(caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)):
    return {"success": True, "stats": identity.admin_stats(db)}


@app.get("/api/admin/users")
def admin_list_users(caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)):
    return {"success": True, "users": [serialize(u) for u in identity.list_users(db)]}


@app.get("/api/admin/users/pending")
def admin_pending_users(caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)):
    return {"success": True, "users": [serialize(u) for u in identity.list_pending_users(db)]}


@app.put("/api/admin/users/{user_id}/verify")
def admin_verify_user(
    user_id: str, caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)
):
    user = identity.approve_verification(db, caller, user_id)
    return {"success": True, "message": "User verified successfully", "user": serialize(user)}


@app.put("/api/admin/users/{user_id}/reject")
def admin_reject_user(
    user_id: str,
    req: Optional[ReasonRequest] = None,
    caller: Identity = Depends(admin_identity),
    db: Database = Depends(get_db),
):
    user = identity.reject_verification(db, caller, user_id, req.reason if req else None)
    return {"success": True, "message": "User verification rejected", "user": serialize(user)}


@app.put("/api/admin/users/{user_id}/block")
def admin_block_user(
    user_id: str,
    req: Optional[ReasonRequest] = None,
    caller: Identity = Depends(admin_identity),
    db: Database = Depends(get_db),
):
    user = identity.block_user(db, caller, user_id, req.reason if req else None)
    return {"success": True, "message": "User blocked successfully", "user": serialize(user)}


@app.put("/api/admin/users/{user_id}/unblock")
def admin_unblock_user(
    user_id: str, caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)
):
    user = identity.unblock_user(db, caller, user_id)
    return {"success": True, "message": "User unblocked successfully", "user": serialize(user)}


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(
    user_id: str, caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)
):
    identity.delete_user(db, caller, user_id)
    return {"success": True, "message": "User and their properties deleted successfully"}


@app.get("/api/admin/properties")
def admin_list_properties(caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)):
    found = properties.list_all_properties(db, caller)
    return {"success": True, "properties": [serialize(p) for p in found]}


@app.get("/api/admin/properties/pending")
def admin_pending_properties(
    caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)
):
    found = properties.list_all_properties(db, caller, approval_status="pending")
    return {"success": True, "properties": [serialize(p) for p in found]}


@app.put("/api/admin/properties/{property_id}/approve")
def admin_approve_property(
    property_id: str, caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)
):
    prop = properties.approve_property(db, caller, property_id)
    return {"success": True, "message": "Property approved successfully", "property": serialize(prop)}


@app.put("/api/admin/properties/{property_id}/reject")
def admin_reject_property(
    property_id: str,
    req: Optional[ReasonRequest] = None,
    caller: Identity = Depends(admin_identity),
    db: Database = Depends(get_db),
):
    prop = properties.reject_property(db, caller, property_id, req.reason if req else None)
    return {"success": True, "message": "Property rejected", "property": serialize(prop)}


@app.put("/api/admin/properties/{property_id}/review")
def admin_review_property(
    property_id: str, caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)
):
    prop = properties.mark_under_review(db, caller, property_id)
    return {"success": True, "message": "Property marked under review", "property": serialize(prop)}


@app.delete("/api/admin/properties/{property_id}")
def admin_delete_property(
    property_id: str, caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)
):
    properties.delete_property(db, caller, property_id)
    return {"success": True, "message": "Property deleted successfully"}


@app.post("/api/admin/bookings/reconcile")
def admin_reconcile_bookings(
    caller: Identity = Depends(admin_identity), db: Database = Depends(get_db)
):
    applied = bookings.reconcile_property_sync(db)
    return {"success": True, "message": f"Applied {applied} pending property status changes", "applied": applied}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.PORT))
    uvicorn.run(app, host="0.0.0.0", port=port)
