# constants.py

# Roles that bypass every gate rule
ADMIN_ROLES = ('admin', 'super_admin')

# --- NOTATION JURY ---
MIN_GRADE = 0.0
MAX_GRADE = 20.0

# --- PLAGIAT ---
PLAGIARISM_THRESHOLD_KEY = 'plagiarism_threshold'
MIN_PLAGIARISM_SCORE = 0.0
MAX_PLAGIARISM_SCORE = 100.0

CONFLICT_MESSAGE = "Someone already acted on this, refresh and retry."

# --- ARCHIVAGE (Dublin Core) ---
ARCHIVE_PUBLISHER = 'ENSPD'
ARCHIVE_LANGUAGE = 'fr'
