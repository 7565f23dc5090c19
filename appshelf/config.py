import os

# Racine des fichiers uploadés : seuls les fichiers sous ce chemin sont supprimés par l'application
UPLOAD_STORAGE_PATH = os.getenv("UPLOAD_STORAGE_PATH", "/data/uploads")
IMAGE_STORAGE_PATH = os.getenv("IMAGE_STORAGE_PATH", "/data/images")
DB_PATH = os.getenv("DB_PATH", "/data/db.sqlite")
BASE_URL = os.getenv("BASE_URL", "http://localhost:8585")
MAX_UPLOAD_SIZE_GB = int(os.getenv("MAX_UPLOAD_SIZE_GB", "5"))
MAX_IMAGE_SIZE_MB = int(os.getenv("MAX_IMAGE_SIZE_MB", "5"))

# Compte administrateur (optionnel : laisser vide pour désactiver l'auth)
AUTH_USERNAME = os.getenv("AUTH_USERNAME", "")
AUTH_PASSWORD = os.getenv("AUTH_PASSWORD", "")

# Compte lecture seule : peut parcourir et télécharger, pas administrer
VIEWER_USERNAME = os.getenv("VIEWER_USERNAME", "")
VIEWER_PASSWORD = os.getenv("VIEWER_PASSWORD", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
