"""
Portfolio images and print products.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from auth import is_admin
from database import create_document, db
from errors import ForbiddenError, NotFoundError, ValidationError, describe_errors
from querying import build_filter, ensure_object_id, page_params, paginate, parse_select, parse_sort, serialize_doc
from schemas import Image as ImageSchema, Product as ProductSchema
import storage

logger = logging.getLogger(__name__)

IMAGE_FILTER_FIELDS = (
    "title", "category", "tags", "featured", "in_portfolio", "is_for_sale",
    "uploaded_by", "format", "width", "height", "size", "location", "uploaded_at",
)
PRODUCT_FILTER_FIELDS = ("name", "category", "price", "stock", "featured", "image_id", "created_at")

IMAGE_UPDATE_FIELDS = (
    "title", "description", "category", "tags", "location", "date_taken",
    "featured", "in_portfolio", "is_for_sale",
)
PRODUCT_UPDATE_FIELDS = ("name", "description", "price", "stock", "category", "image_url", "image_id", "featured")


def split_tags(tags: Union[str, List[str], None]) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return [t.strip() for t in tags if t and t.strip()]


def _list(collection: str, params: Mapping[str, str], allowed: Tuple[str, ...], default_sort: str) -> Tuple[List[dict], dict]:
    query = build_filter(params, allowed)
    page, limit = page_params(params.get("page"), params.get("limit"))
    sort = parse_sort(params.get("sort"), default_sort)
    return paginate(db[collection], query, sort, page, limit, parse_select(params.get("select")))


def _validated_update(schema, current: Dict[str, Any], update: Dict[str, Any]) -> None:
    merged = {k: v for k, v in current.items() if k != "_id"}
    merged.update(update)
    try:
        schema(**merged)
    except PydanticValidationError as exc:
        raise ValidationError(describe_errors(exc.errors()))


# ----- Images -----

def list_images(params: Mapping[str, str]) -> Tuple[List[dict], dict]:
    return _list("image", params, IMAGE_FILTER_FIELDS, "-uploaded_at")


def get_image(image_id: str) -> Dict[str, Any]:
    doc = db["image"].find_one({"_id": ensure_object_id(image_id, "image id")})
    if not doc:
        raise NotFoundError(f"Image not found with id of {image_id}")
    return serialize_doc(doc)


def _check_image_owner(image: Dict[str, Any], user: Dict[str, Any], action: str) -> None:
    if image.get("uploaded_by") != user["id"] and not is_admin(user):
        raise ForbiddenError(f"User {user['id']} is not authorized to {action} this image")


def upload_image(user: Dict[str, Any], filename: str, data: bytes, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Validate, process and store an uploaded image, then record it."""
    storage.validate_upload(filename, len(data))
    category = fields.get("category") or "other"
    title = fields.get("title") or os.path.splitext(filename)[0][:100]
    # Check the record before writing any asset
    try:
        ImageSchema(
            title=title,
            description=fields.get("description") or "",
            category=category,
            tags=split_tags(fields.get("tags")),
            image_url="pending",
            uploaded_by=user["id"],
            uploaded_at=datetime.now(timezone.utc),
        )
    except PydanticValidationError as exc:
        raise ValidationError(describe_errors(exc.errors()))

    stored = storage.store_image(data, filename)
    meta = stored["metadata"]
    image = ImageSchema(
        title=title,
        description=fields.get("description") or "",
        category=category,
        tags=split_tags(fields.get("tags")),
        image_url=stored["image_url"],
        thumbnail_url=stored["thumbnail_url"],
        original_filename=filename,
        size=meta["size"],
        width=meta["width"],
        height=meta["height"],
        format=meta["format"] or storage.file_extension(filename),
        uploaded_by=user["id"],
        uploaded_at=datetime.now(timezone.utc),
    )
    new_id = create_document("image", image)
    return get_image(new_id)


def update_image(image_id: str, user: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    oid = ensure_object_id(image_id, "image id")
    current = db["image"].find_one({"_id": oid})
    if not current:
        raise NotFoundError(f"Image not found with id of {image_id}")
    _check_image_owner(current, user, "update")

    update = {k: v for k, v in fields.items() if k in IMAGE_UPDATE_FIELDS and v is not None}
    if "tags" in update:
        update["tags"] = split_tags(update["tags"])
    if not update:
        return serialize_doc(current)
    _validated_update(ImageSchema, current, update)
    update["updated_at"] = datetime.now(timezone.utc)
    db["image"].update_one({"_id": oid}, {"$set": update})
    return get_image(image_id)


def delete_image(image_id: str, user: Dict[str, Any]) -> None:
    oid = ensure_object_id(image_id, "image id")
    image = db["image"].find_one({"_id": oid})
    if not image:
        raise NotFoundError(f"Image not found with id of {image_id}")
    _check_image_owner(image, user, "delete")
    db["image"].delete_one({"_id": oid})
    storage.delete_image_assets(image.get("image_url"), image.get("thumbnail_url"))


def import_portfolio(user: Dict[str, Any], source_path: str, category: str = "other", tags: Optional[str] = None) -> List[Dict[str, Any]]:
    if not source_path:
        raise ValidationError("Please provide source directory path")
    results = storage.import_from_directory(source_path)
    images = []
    for result in results:
        meta = result["metadata"]
        try:
            images.append(ImageSchema(
                title=os.path.splitext(result["filename"])[0][:100],
                category=category,
                tags=split_tags(tags),
                image_url=result["image_url"],
                thumbnail_url=result["thumbnail_url"],
                original_filename=result["filename"],
                size=meta.get("size") or 0,
                width=meta.get("width") or 0,
                height=meta.get("height") or 0,
                format=meta.get("format") or storage.file_extension(result["filename"]),
                uploaded_by=user["id"],
                uploaded_at=datetime.now(timezone.utc),
            ))
        except PydanticValidationError as exc:
            storage.discard_imported(results)
            raise ValidationError(describe_errors(exc.errors()))
    records = [get_image(create_document("image", image)) for image in images]
    logger.info("Imported %d images from %s", len(records), source_path)
    return records


def check_directory(directory_path: str) -> Dict[str, Any]:
    if not directory_path:
        raise ValidationError("Please provide directory path")
    image_files = storage.list_image_files(directory_path)
    return {
        "directory": directory_path,
        "total_files": len(os.listdir(directory_path)),
        "image_files": len(image_files),
        "files": image_files,
    }


# ----- Products -----

def list_products(params: Mapping[str, str]) -> Tuple[List[dict], dict]:
    return _list("product", params, PRODUCT_FILTER_FIELDS, "-created_at")


def featured_products(limit: int = 10) -> List[Dict[str, Any]]:
    cursor = db["product"].find({"featured": True}).sort("created_at", -1).limit(limit)
    return [serialize_doc(d) for d in cursor]


def products_by_category(category: str) -> List[Dict[str, Any]]:
    cursor = db["product"].find({"category": category}).sort("created_at", -1)
    return [serialize_doc(d) for d in cursor]


def get_product(product_id: str) -> Dict[str, Any]:
    doc = db["product"].find_one({"_id": ensure_object_id(product_id, "product id")})
    if not doc:
        raise NotFoundError(f"Product not found with id of {product_id}")
    return serialize_doc(doc)


def create_product(fields: Dict[str, Any]) -> Dict[str, Any]:
    try:
        product = ProductSchema(**fields)
    except PydanticValidationError as exc:
        raise ValidationError(describe_errors(exc.errors()))
    if product.image_id:
        image = get_image(product.image_id)
        product.image_url = product.image_url or image["image_url"]
    return get_product(create_document("product", product))


def update_product(product_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    oid = ensure_object_id(product_id, "product id")
    current = db["product"].find_one({"_id": oid})
    if not current:
        raise NotFoundError(f"Product not found with id of {product_id}")
    update = {k: v for k, v in fields.items() if k in PRODUCT_UPDATE_FIELDS and v is not None}
    if not update:
        raise ValidationError("No fields to update")
    _validated_update(ProductSchema, current, update)
    update["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": oid}, {"$set": update})
    return get_product(product_id)


def update_stock(product_id: str, stock: Optional[int]) -> Dict[str, Any]:
    if stock is None or stock < 0:
        raise ValidationError("Stock must be a non-negative integer")
    oid = ensure_object_id(product_id, "product id")
    res = db["product"].update_one({"_id": oid}, {"$set": {"stock": int(stock), "updated_at": datetime.now(timezone.utc)}})
    if res.matched_count == 0:
        raise NotFoundError(f"Product not found with id of {product_id}")
    return get_product(product_id)


def delete_product(product_id: str) -> None:
    oid = ensure_object_id(product_id, "product id")
    res = db["product"].delete_one({"_id": oid})
    if res.deleted_count == 0:
        raise NotFoundError(f"Product not found with id of {product_id}")
