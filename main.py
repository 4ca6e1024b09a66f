import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import addresses as address_book
from database import Database, create_document, get_documents
from errors import Conflict, InternalFailure, NotFound, ShopError, Unauthorized, ValidationFailure
from schemas import GENDERS, ORDER_STATUSES, USER_ROLES, Address
from schemas import Order as OrderSchema
from schemas import OrderItem
from schemas import Product as ProductSchema
from schemas import User as UserSchema

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("storefront")

# JWT Config
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days
PASSWORD_MIN_LENGTH = 6

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Storefront API")
    app.state.database.connect()
    yield
    app.state.database.close()
    logger.info("Storefront API stopped")


app = FastAPI(title="Storefront API", lifespan=lifespan)
app.state.database = Database()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error responses

@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors[".".join(loc) or "body"] = error.get("msg", "Invalid value")
    return await shop_error_handler(request, ValidationFailure(errors))


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.info("Duplicate key on %s %s: %s", request.method, request.url.path, exc.details)
    return await shop_error_handler(request, Conflict("Duplicate value for a unique field"))


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error: %s", exc, exc_info=True)
    return await shop_error_handler(request, InternalFailure("Internal server error"))


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise Unauthorized("Invalid or expired token")


def is_object_id(value: str) -> bool:
    # ObjectId.is_valid also accepts any 12-byte string
    return isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value)


def parse_object_id(value: str, name: str = "id") -> ObjectId:
    if not is_object_id(value):
        raise ValidationFailure({name: f"Invalid {name}"})
    return ObjectId(value)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(user)
    # Never send password hash
    user.pop("password_hash", None)
    return user


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# Dependencies

def get_db(request: Request):
    database = request.app.state.database
    if database is None or database.db is None:
        raise InternalFailure("Database not configured")
    return database.db


def get_current_user(authorization: Optional[str] = Header(default=None), db=Depends(get_db)):
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Not authenticated")
    payload = decode_token(authorization.split(" ", 1)[1])
    user_id = payload.get("sub")
    if not user_id or not is_object_id(user_id):
        raise Unauthorized("Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise Unauthorized("User not found")
    return public_user(user)


def require_admin(current_user: dict = Depends(get_current_user)):
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user


# Routes
@app.get("/")
def read_root():
    return {"message": "Storefront API"}


@app.get("/test")
def test_database(request: Request):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    db = request.app.state.database.db
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Auth
class RegisterInput(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


@app.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterInput, db=Depends(get_db)):
    errors = {}
    if not payload.name.strip():
        errors["name"] = "Name is required"
    if len(payload.password) < PASSWORD_MIN_LENGTH:
        errors["password"] = f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"
    if errors:
        raise ValidationFailure(errors)

    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise Conflict("Email already registered")
    user_model = UserSchema(
        name=payload.name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
    )
    user_id = create_document(db, "user", user_model.model_dump(mode="json"))
    logger.info("Registered user %s", user_id)
    token = create_access_token({"sub": user_id})
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    return TokenResponse(access_token=token, user=public_user(user))


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginInput, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthorized("Invalid email or password")
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token, user=public_user(user))


@app.get("/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return current_user


# Users
class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[str] = None
    password: Optional[str] = None


class PreferencesUpdate(BaseModel):
    newsletter: Optional[bool] = None
    sms_notifications: Optional[bool] = None
    email_notifications: Optional[bool] = None
    product_recommendations: Optional[bool] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[datetime] = None
    gender: Optional[str] = None
    preferences: Optional[PreferencesUpdate] = None


def _check_user_access(current_user: dict, user_id: str):
    if current_user["id"] != user_id and current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Not allowed to access this user")


@app.get("/users/{user_id}")
def get_user(user_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    oid = parse_object_id(user_id, "user_id")
    _check_user_access(current_user, user_id)
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise NotFound("User not found")
    return public_user(user)


@app.put("/users/{user_id}")
def update_user(user_id: str, data: UserUpdate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    oid = parse_object_id(user_id, "user_id")
    _check_user_access(current_user, user_id)

    updates = data.model_dump(exclude_unset=True)
    errors = {}
    if "name" in updates and not (updates["name"] or "").strip():
        errors["name"] = "Name is required"
    if "email" in updates and not updates["email"]:
        errors["email"] = "Email is required"
    if "role" in updates and updates["role"] not in USER_ROLES:
        errors["role"] = "Invalid role"
    if updates.get("password") is not None and len(updates["password"]) < PASSWORD_MIN_LENGTH:
        errors["password"] = f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"
    if errors:
        raise ValidationFailure(errors)
    if "role" in updates and current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")

    set_fields: Dict[str, Any] = {"updated_at": now_utc()}
    if "name" in updates:
        set_fields["name"] = updates["name"].strip()
    if "email" in updates:
        email = updates["email"].lower()
        if db["user"].find_one({"email": email, "_id": {"$ne": oid}}):
            raise Conflict("Email already in use")
        set_fields["email"] = email
    if "role" in updates:
        set_fields["role"] = updates["role"]
    if updates.get("password"):
        set_fields["password_hash"] = hash_password(updates["password"])

    user = db["user"].find_one_and_update({"_id": oid}, {"$set": set_fields}, return_document=ReturnDocument.AFTER)
    if not user:
        raise NotFound("User not found")
    return public_user(user)


@app.patch("/users/me")
def update_profile(data: ProfileUpdate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    updates = data.model_dump(exclude_unset=True)
    errors = {}
    if "name" in updates and not (updates["name"] or "").strip():
        errors["name"] = "Name is required"
    if "gender" in updates and updates["gender"] not in GENDERS:
        errors["gender"] = "Gender must be one of: male, female, other"
    if errors:
        raise ValidationFailure(errors)

    set_fields: Dict[str, Any] = {"updated_at": now_utc()}
    for key in ("name", "phone"):
        if key in updates:
            set_fields[key] = (updates[key] or "").strip()
    for key in ("date_of_birth", "gender"):
        if key in updates:
            set_fields[key] = updates[key]
    for key, value in (updates.get("preferences") or {}).items():
        if value is not None:
            set_fields[f"preferences.{key}"] = value

    user = db["user"].find_one_and_update(
        {"_id": ObjectId(current_user["id"])}, {"$set": set_fields}, return_document=ReturnDocument.AFTER
    )
    return public_user(user)


# Addresses
class AddressIn(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    label: Optional[str] = None
    phone: Optional[str] = None
    is_default: bool = False


class AddressUpdate(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    label: Optional[str] = None
    phone: Optional[str] = None
    is_default: Optional[bool] = None


@app.get("/users/me/addresses", response_model=List[Address])
def list_addresses(current_user: dict = Depends(get_current_user)):
    return current_user.get("addresses") or []


@app.post("/users/me/addresses", response_model=List[Address], status_code=201)
def add_address(data: AddressIn, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    fields = data.model_dump(exclude_unset=True, exclude={"is_default"})
    # fail before the read-modify-write starts
    address_book.validate_address({"country": address_book.DEFAULT_COUNTRY, **fields}).raise_for_errors()
    addresses = address_book.save_address_book(
        db["user"],
        ObjectId(current_user["id"]),
        lambda book: address_book.add_address(book, fields, make_default=data.is_default),
    )
    logger.info("Added address for user %s", current_user["id"])
    return addresses


@app.put("/users/me/addresses/{address_id}", response_model=List[Address])
def update_address(address_id: str, data: AddressUpdate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    changes = data.model_dump(exclude_unset=True)
    if changes.get("is_default") is None:
        changes.pop("is_default", None)
    return address_book.save_address_book(
        db["user"],
        ObjectId(current_user["id"]),
        lambda book: address_book.update_address(book, address_id, changes),
    )


@app.delete("/users/me/addresses/{address_id}", response_model=List[Address])
def delete_address(address_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    addresses = address_book.save_address_book(
        db["user"],
        ObjectId(current_user["id"]),
        lambda book: address_book.remove_address(book, address_id),
    )
    logger.info("Removed address %s for user %s", address_id, current_user["id"])
    return addresses


# Wishlist
class WishlistIn(BaseModel):
    product_id: str


def product_filter(product_id: str) -> Dict[str, Any]:
    """Match a product by its document id or by its catalog product_id."""
    if is_object_id(product_id):
        return {"$or": [{"_id": ObjectId(product_id)}, {"product_id": product_id}]}
    return {"product_id": product_id}


@app.get("/users/me/wishlist")
def get_wishlist(current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    items = []
    for it in current_user.get("wishlist") or []:
        prod = db["product"].find_one(product_filter(it["product_id"]))
        items.append({**it, "product": serialize_doc(prod) if prod else None})
    return items


@app.post("/users/me/wishlist", status_code=201)
def add_to_wishlist(item: WishlistIn, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    prod = db["product"].find_one(product_filter(item.product_id))
    if not prod:
        raise NotFound("Product not found")
    product_id = str(prod["_id"])
    user_id = ObjectId(current_user["id"])
    # only pushes when the product is not listed yet
    db["user"].update_one(
        {"_id": user_id, "wishlist.product_id": {"$ne": product_id}},
        {
            "$push": {"wishlist": {"product_id": product_id, "added_at": now_utc()}},
            "$set": {"updated_at": now_utc()},
        },
    )
    return db["user"].find_one({"_id": user_id}).get("wishlist", [])


@app.delete("/users/me/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    prod = db["product"].find_one(product_filter(product_id))
    candidates = [product_id]
    if prod:
        candidates.insert(0, str(prod["_id"]))
    user_id = ObjectId(current_user["id"])
    result = db["user"].update_one(
        {"_id": user_id, "wishlist.product_id": {"$in": candidates}},
        {
            "$pull": {"wishlist": {"product_id": {"$in": candidates}}},
            "$set": {"updated_at": now_utc()},
        },
    )
    if not result.matched_count:
        raise NotFound("Product not in wishlist")
    return db["user"].find_one({"_id": user_id}).get("wishlist", [])


# Products
class ProductIn(BaseModel):
    product_id: str
    name: str
    description: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    category: str
    images: List[str] = Field(..., min_length=1)
    rating: float = Field(0, ge=0, le=5)
    reviews: int = Field(0, ge=0)
    in_stock: bool = True
    features: List[str] = []


class ProductUpdate(BaseModel):
    product_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    reviews: Optional[int] = Field(None, ge=0)
    in_stock: Optional[bool] = None
    features: Optional[List[str]] = None


REQUIRED_PRODUCT_TEXT = ("product_id", "name", "description", "category")


@app.post("/products", status_code=201)
def create_product(data: ProductIn, current_user: dict = Depends(require_admin), db=Depends(get_db)):
    errors = {}
    for key in REQUIRED_PRODUCT_TEXT:
        if not getattr(data, key).strip():
            errors[key] = f"{key} is required"
    if errors:
        raise ValidationFailure(errors)
    if db["product"].find_one({"product_id": data.product_id}):
        raise Conflict("Product ID already exists")
    product = ProductSchema(**data.model_dump())
    pid = create_document(db, "product", product.model_dump())
    logger.info("Created product %s (%s)", data.product_id, pid)
    return serialize_doc(db["product"].find_one({"_id": ObjectId(pid)}))


@app.get("/products")
def list_products(db=Depends(get_db)):
    return [serialize_doc(p) for p in get_documents(db, "product", sort=[("created_at", -1)])]


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    product = db["product"].find_one(product_filter(product_id))
    if not product:
        raise NotFound("Product not found")
    return serialize_doc(product)


@app.put("/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, current_user: dict = Depends(require_admin), db=Depends(get_db)):
    update_dict = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if not update_dict:
        raise ValidationFailure({"body": "No fields to update"})
    errors = {
        key: f"{key} is required"
        for key in REQUIRED_PRODUCT_TEXT
        if key in update_dict and not update_dict[key].strip()
    }
    if errors:
        raise ValidationFailure(errors)

    product = db["product"].find_one(product_filter(product_id))
    if not product:
        raise NotFound("Product not found")
    new_id = update_dict.get("product_id")
    if new_id and new_id != product["product_id"] and db["product"].find_one({"product_id": new_id}):
        raise Conflict("Product ID already exists")

    update_dict["updated_at"] = now_utc()
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]}, {"$set": update_dict}, return_document=ReturnDocument.AFTER
    )
    return serialize_doc(updated)


@app.delete("/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_admin), db=Depends(get_db)):
    product = db["product"].find_one_and_delete(product_filter(product_id))
    if not product:
        raise NotFound("Product not found")
    logger.info("Deleted product %s", product.get("product_id"))
    return {"ok": True, "id": str(product["_id"])}


@app.get("/categories")
def list_categories(db=Depends(get_db)):
    pipeline = [
        {"$sort": {"created_at": 1}},
        {"$group": {"_id": "$category", "product_count": {"$sum": 1}, "images": {"$first": "$images"}}},
        {"$sort": {"_id": 1}},
    ]
    categories = []
    for row in db["product"].aggregate(pipeline):
        images = row.get("images") or []
        categories.append({
            "name": row["_id"],
            "product_count": row["product_count"],
            "image": images[0] if images else None,
        })
    return categories


# Orders
class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    address_id: Optional[str] = None


class OrderUpdate(BaseModel):
    status: Optional[str] = None
    notes: Optional[str] = None


def _order_for(order_id: str, current_user: dict, db) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": parse_object_id(order_id, "order_id")})
    if not order or (current_user.get("role") != "admin" and order.get("user_id") != current_user["id"]):
        raise NotFound("Order not found")
    return order


@app.post("/orders", status_code=201)
def create_order(payload: OrderCreate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    user_addresses = current_user.get("addresses") or []
    if payload.address_id:
        shipping = next((a for a in user_addresses if a.get("id") == payload.address_id), None)
        if shipping is None:
            raise NotFound("Address not found")
    else:
        shipping = address_book.find_default_address(user_addresses)
        if shipping is None:
            raise ValidationFailure({"address_id": "No shipping address on file"})

    total = 0.0
    order_items = []
    for it in payload.items:
        product = db["product"].find_one(product_filter(it.product_id))
        if not product:
            raise NotFound(f"Product not found: {it.product_id}")
        if not product.get("in_stock", True):
            raise ValidationFailure({"items": f"{product['name']} is out of stock"})
        price = float(product.get("price", 0))
        total += price * it.quantity
        order_items.append(OrderItem(
            product_id=str(product["_id"]),
            name=product["name"],
            price=price,
            quantity=it.quantity,
        ))

    order = OrderSchema(
        user_id=current_user["id"],
        items=order_items,
        total_price=round(total, 2),
        shipping_address=shipping,
        status_updated_at=now_utc(),
    )
    order_id = create_document(db, "order", order.model_dump())
    logger.info("Created order %s for user %s", order_id, current_user["id"])
    return serialize_doc(db["order"].find_one({"_id": ObjectId(order_id)}))


@app.get("/orders")
def list_orders(current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    filt = {}
    if current_user.get("role") != "admin":
        filt = {"user_id": current_user["id"]}
    return [serialize_doc(o) for o in get_documents(db, "order", filt, sort=[("created_at", -1)])]


@app.get("/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(_order_for(order_id, current_user, db))


@app.put("/orders/{order_id}")
def update_order(order_id: str, data: OrderUpdate, current_user: dict = Depends(require_admin), db=Depends(get_db)):
    updates = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if not updates:
        raise ValidationFailure({"body": "No fields to update"})
    if "status" in updates and updates["status"] not in ORDER_STATUSES:
        raise ValidationFailure({"status": "Invalid order status"})

    order = _order_for(order_id, current_user, db)
    now = now_utc()
    updates["updated_at"] = now
    if "status" in updates:
        # any status may follow any other; admins can override freely
        updates["status_updated_at"] = now
        logger.info("Order %s status %s -> %s", order_id, order.get("status"), updates["status"])
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return serialize_doc(updated)


@app.delete("/orders/{order_id}")
def cancel_order(order_id: str, current_user: dict = Depends(require_admin), db=Depends(get_db)):
    order = _order_for(order_id, current_user, db)
    now = now_utc()
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"status": "cancelled", "status_updated_at": now, "updated_at": now}},
    )
    logger.info("Cancelled order %s", order_id)
    return {"id": str(order["_id"]), "status": "cancelled"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
