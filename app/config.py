import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_PATH = os.getenv("DATABASE_PATH", "theatre.db")

DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_MAX_CONNECTIONS = int(os.getenv("DATABASE_MAX_CONNECTIONS", "5"))
SEED_DEMO_CASES = os.getenv("SEED_DEMO_CASES", "true").lower() == "true"

# Dayboard metrics
DAYBOARD_DELAY_THRESHOLD_MINUTES = int(os.getenv("DAYBOARD_DELAY_THRESHOLD_MINUTES", "10"))

# Operative timeline range checks (0 disables the max-age check)
TIMELINE_FUTURE_BUFFER_MINUTES = int(os.getenv("TIMELINE_FUTURE_BUFFER_MINUTES", "5"))
TIMELINE_MAX_AGE_HOURS = int(os.getenv("TIMELINE_MAX_AGE_HOURS", "48"))

# Clinical records service (doctor plan, consents, nurse forms, operative note).
# When unset, collaborators read the local clinical tables.
CLINICAL_RECORDS_URL = os.getenv("CLINICAL_RECORDS_URL", "")
CLINICAL_RECORDS_TIMEOUT_SECONDS = float(os.getenv("CLINICAL_RECORDS_TIMEOUT_SECONDS", "5"))

# GCP (optional)
GCP_PROJECT_ID = os.getenv("GCP_PROJECT_ID", "")
GCP_PUBSUB_TOPIC = os.getenv("GCP_PUBSUB_TOPIC", "")
GCP_PUBSUB_SUBSCRIPTION_PREFIX = os.getenv("GCP_PUBSUB_SUBSCRIPTION_PREFIX", "theatre-events")
