import os

API_KEY = os.environ.get("OPEN_WORKBENCH_API_KEY", "")
PROJECTS_DIR = os.environ.get(
    "OPEN_WORKBENCH_PROJECTS_DIR",
    os.path.join(os.path.expanduser("~"), ".open-workbench", "projects"),
)
LOG_DIR = os.environ.get(
    "OPEN_WORKBENCH_LOG_DIR",
    os.path.join(os.path.expanduser("~"), ".open-workbench", "logs"),
)
LOG_LEVEL = os.environ.get("OPEN_WORKBENCH_LOG_LEVEL", "INFO").upper()
CORS_ALLOWED_ORIGINS = os.environ.get("OPEN_WORKBENCH_CORS_ALLOWED_ORIGINS", "*")

# Maximum lifetime of an execution before it is killed.
EXECUTION_TIMEOUT = float(os.environ.get("OPEN_WORKBENCH_EXECUTION_TIMEOUT", "300"))
# How long a finished execution stays queryable after leaving the live registry.
FINISHED_RETENTION = float(os.environ.get("OPEN_WORKBENCH_FINISHED_RETENTION", "300"))

# Comma-separated mime type prefixes for binary files that read_file will return
# as raw binary responses (e.g. "image,audio" or "image/png,image/jpeg").
BINARY_FILE_MIME_PREFIXES = [
    p.strip()
    for p in os.environ.get("OPEN_WORKBENCH_BINARY_MIME_PREFIXES", "image").split(",")
    if p.strip()
]
