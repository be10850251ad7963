"""
Product ingestion

Normalizes a multipart product submission (plain text fields, JSON-encoded
sub-objects and up to MAX_IMAGES image files) into a validated product write.

Parsing of the JSON sub-fields is lenient: a field that fails to parse is
logged and left out so the schema default applies. Everything else about the
request is checked before the first image is stored or any write happens.
Images are stored one by one in submission order. A file whose upload fails is
skipped and the product is written with the images that did succeed.
"""
import json
from typing import List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, now, serialize, to_object_id
from errors import ConflictError, ImageUploadError, NotFoundError, ValidationError
from logging_config import get_logger
from schemas import Product, ProductUpdate, error_details
from storage import ImageFile, ImageSink

logger = get_logger(__name__)

JSON_FIELDS = ("categories", "tags", "dimensions", "attributes", "meta_keywords", "videos", "variants")
BOOLEAN_FIELDS = ("featured", "is_active")
# never taken from the form: images come from uploads, the rest is derived
READ_ONLY_FIELDS = ("id", "_id", "images", "rating_average", "rating_count", "created_at", "updated_at")

SLUG_TAKEN = "Product with this slug already exists"
IMAGE_RULE = "Only image files up to 5MB are allowed"


def coerce_bool(value) -> Optional[bool]:
    if value == "true":
        return True
    if value == "false":
        return False
    return None


def parse_form_fields(fields: Mapping) -> dict:
    data = {}
    for key, value in fields.items():
        if key in READ_ONLY_FIELDS or key == "clear_images" or not isinstance(value, str):
            continue
        if not value.strip():
            continue

        if key in JSON_FIELDS:
            try:
                data[key] = json.loads(value)
            except ValueError as exc:
                logger.warning("json_field_parse_failed", field=key, error=str(exc))
        elif key in BOOLEAN_FIELDS:
            coerced = coerce_bool(value)
            if coerced is None:
                logger.info("boolean_field_ignored", field=key, value=value)
            else:
                data[key] = coerced
        else:
            data[key] = value
    return data


def oversized_detail(index: int, filename: str) -> str:
    return f"images.{index}: {filename} exceeds {config.MAX_IMAGE_BYTES // (1024 * 1024)}MB"


def validate_images(images: Sequence[ImageFile]):
    if len(images) > config.MAX_IMAGES:
        raise ValidationError(f"Too many files. Maximum {config.MAX_IMAGES} images allowed.")
    details = []
    for index, image in enumerate(images):
        if not (image.content_type or "").startswith("image/"):
            details.append(f"images.{index}: {image.filename} is not an image")
        elif image.size > config.MAX_IMAGE_BYTES:
            details.append(oversized_detail(index, image.filename))
    if details:
        raise ValidationError(IMAGE_RULE, details)


def check_sale_price(product: Mapping):
    """Apply the create-time ``sale_price <= price`` rule to a merged update."""
    price = product.get("price")
    sale_price = product.get("sale_price")
    if price is not None and sale_price is not None and sale_price > price:
        raise ValidationError("Validation failed", ["sale_price: must not exceed price"])


class ProductIngestionPipeline:
    def __init__(self, db: Database, sink: ImageSink):
        self.db = db
        self.sink = sink
        self.collection = db["product"]

    def store_images(self, images: Sequence[ImageFile]) -> List[str]:
        urls = []
        for index, image in enumerate(images):
            try:
                urls.append(self.sink.store(image, config.IMAGE_FOLDER))
            except ImageUploadError as exc:
                logger.warning("image_upload_skipped", index=index, filename=image.filename, error=str(exc))
        logger.info("images_stored", stored=len(urls), submitted=len(images))
        return urls

    def _slug_taken(self, slug: str, exclude=None) -> bool:
        query = {"slug": slug}
        if exclude is not None:
            query["_id"] = {"$ne": exclude}
        return self.collection.find_one(query, {"_id": 1}) is not None

    def create(self, fields: Mapping, images: Sequence[ImageFile] = ()) -> Tuple[dict, int]:
        """Validate, store images, insert. Returns the product and the number of stored images."""
        data = parse_form_fields(fields)
        validate_images(images)
        try:
            product = Product.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError("Validation failed", error_details(exc))

        if self._slug_taken(product.slug):
            raise ConflictError(SLUG_TAKEN)

        doc = product.model_dump()
        doc["images"] = self.store_images(images)
        try:
            inserted = create_document(self.db, "product", doc)
        except DuplicateKeyError:
            raise ConflictError(SLUG_TAKEN)

        logger.info("product_created", product_id=str(inserted["_id"]), slug=product.slug)
        return serialize(inserted), len(doc["images"])

    def update(self, product_id: str, fields: Mapping, images: Sequence[ImageFile] = ()) -> Tuple[dict, int]:
        """Apply a partial update. New images are appended unless ``clear_images=true``."""
        oid = to_object_id(product_id)
        if oid is None:
            raise NotFoundError("Product not found")

        data = parse_form_fields(fields)
        clear_images = coerce_bool(fields.get("clear_images")) is True
        validate_images(images)
        try:
            changes = ProductUpdate.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError("Validation failed", error_details(exc))
        values = changes.model_dump()
        update_set = {name: values[name] for name in changes.model_fields_set}

        current = self.collection.find_one({"_id": oid}, {"price": 1, "sale_price": 1})
        if current is None:
            raise NotFoundError("Product not found")
        check_sale_price({**current, **update_set})
        if "slug" in update_set and self._slug_taken(update_set["slug"], exclude=oid):
            raise ConflictError(SLUG_TAKEN)

        urls = self.store_images(images)
        update_set["updated_at"] = now()
        update = {"$set": update_set}
        if clear_images:
            update_set["images"] = urls
        elif urls:
            update["$push"] = {"images": {"$each": urls}}

        try:
            doc = self.collection.find_one_and_update({"_id": oid}, update, return_document=ReturnDocument.AFTER)
        except DuplicateKeyError:
            raise ConflictError(SLUG_TAKEN)
        if doc is None:
            raise NotFoundError("Product not found")

        logger.info("product_updated", product_id=product_id, fields=sorted(update_set), new_images=len(urls))
        return serialize(doc), len(urls)

    def delete(self, product_id: str):
        oid = to_object_id(product_id)
        if oid is None or self.collection.find_one_and_delete({"_id": oid}) is None:
            raise NotFoundError("Product not found")
        logger.info("product_deleted", product_id=product_id)
