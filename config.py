"""
Runtime settings

Read once from the environment when the module is imported.
"""
import os

ENV = (os.getenv("ENV") or os.getenv("ENVIRONMENT") or "development").lower()

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")
DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", 5000))

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

CLOUDINARY_URL = os.getenv("CLOUDINARY_URL")
IMAGE_STORAGE = (os.getenv("IMAGE_STORAGE") or ("hosted" if CLOUDINARY_URL else "local")).lower()
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join("uploads", "images"))
IMAGE_URL_PREFIX = os.getenv("IMAGE_URL_PREFIX", "/images")
IMAGE_FOLDER = "products"

MAX_IMAGE_BYTES = 5 * 1024 * 1024
MAX_IMAGES = 10

DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 100

RESERVE_STOCK = os.getenv("RESERVE_STOCK", "true").lower() not in ("0", "false", "no")

LOG_DIR = os.getenv("LOG_DIR")


def is_development() -> bool:
    return ENV == "development"
