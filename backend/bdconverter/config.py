"""Application configuration. Loads from environment and .env file."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")

# Paths (override with env)
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(BASE_DIR / "upload")))
WORK_DIR = Path(os.getenv("WORK_DIR", str(BASE_DIR / "temp")))
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", str(BASE_DIR / "output")))
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
WORK_DIR.mkdir(parents=True, exist_ok=True)
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

# Supported inputs
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".tif", ".tiff", ".bmp", ".webp"}
# Extra image types recognized inside page-image archives
ARCHIVE_IMAGE_EXTENSIONS = IMAGE_EXTENSIONS | {".gif"}
DOCUMENT_EXTENSIONS = {".pdf"}
ARCHIVE_EXTENSIONS = {".cbz", ".zip", ".cbr", ".rar", ".cb7", ".7z", ".cbt", ".tar"}
INPUT_EXTENSIONS = IMAGE_EXTENSIONS | DOCUMENT_EXTENSIONS | ARCHIVE_EXTENSIONS

# Conversion defaults (env overrides)
DEFAULT_DPI = int(os.getenv("DEFAULT_DPI", "225"))
DEFAULT_JPEG_QUALITY = int(os.getenv("DEFAULT_JPEG_QUALITY", "80"))
DEFAULT_ARCHIVE_COMPRESSION = int(os.getenv("DEFAULT_ARCHIVE_COMPRESSION", "5"))
DEFAULT_CONTAINER = os.getenv("DEFAULT_CONTAINER", "cbz")
IMAGE_OUTPUT_FORMATS = ["jpeg", "png", "tiff"]
CONTAINER_FORMATS = ["cbz", "cbt", "cb7", "cbr", "zip", "tar", "7z", "rar", "pdf", "folder"]

# External tools. Each invocation is bounded by TOOL_TIMEOUT_SECONDS (30 min default).
PDFTOPPM_PATH = os.getenv("PDFTOPPM_PATH", "pdftoppm")
PDFIMAGES_PATH = os.getenv("PDFIMAGES_PATH", "pdfimages")
PDFINFO_PATH = os.getenv("PDFINFO_PATH", "pdfinfo")
SEVEN_ZIP_PATH = os.getenv("SEVEN_ZIP_PATH", "7z")
RAR_PATH = os.getenv("RAR_PATH", "rar")
UNRAR_PATH = os.getenv("UNRAR_PATH", "unrar")
BSDTAR_PATH = os.getenv("BSDTAR_PATH", "bsdtar")
TOOL_TIMEOUT_SECONDS = int(os.getenv("TOOL_TIMEOUT_SECONDS", "1800"))

# Progress
PROGRESS_POLL_INTERVAL = float(os.getenv("PROGRESS_POLL_INTERVAL", "1.0"))
# Progressive thumbnail UI feature flag, on unless FEATURE_PROGRESS_THUMBNAIL=0
FEATURE_PROGRESS_THUMBNAIL = os.getenv("FEATURE_PROGRESS_THUMBNAIL", "1") != "0"
THUMBNAIL_SIZE = int(os.getenv("THUMBNAIL_SIZE", "200"))

# Batches run one at a time by default to bound external-process usage
CONVERSION_WORKERS = max(1, int(os.getenv("CONVERSION_WORKERS", "1")))

# Database – SQLite by default; any SQLAlchemy URL via DATABASE_URL
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
    db_path = BASE_DIR / "data" / "bdconverter.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    DATABASE_URL = f"sqlite:///{db_path}"

# Limits
MAX_UPLOAD_SIZE_MB = int(os.getenv("MAX_UPLOAD_SIZE_MB", "2048"))
MAX_UPLOAD_SIZE_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3111"))
# CORS: comma-separated origins, e.g. "http://localhost:5173,http://127.0.0.1:5173"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("bdconverter")
