import os

from dotenv import load_dotenv

load_dotenv()

# Persisted file next to the package unless DB_PATH says otherwise
DB_PATH = os.environ.get("DB_PATH", os.path.join(os.path.dirname(__file__), "contest.sqlite"))

SITE_URL = os.environ.get("SITE_URL", "https://chantenscene.fr").rstrip("/")
TIMEZONE = os.environ.get("TIMEZONE", "Europe/Paris")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "")
ADMIN_COOKIE = "admin_token"
CRON_SECRET = os.environ.get("CRON_SECRET", "")

# Transactional email (Resend) and bulk email (SMTP)
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
FROM_EMAIL = os.environ.get("FROM_EMAIL", "ChanteEnScène <inscriptions@chantenscene.fr>")
SMTP_HOST = os.environ.get("SMTP_HOST", "smtp.ionos.fr")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASS = os.environ.get("SMTP_PASS", "")
SMTP_FROM = os.environ.get("SMTP_FROM", FROM_EMAIL)

# Web push
VAPID_PUBLIC_KEY = os.environ.get("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.environ.get("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.environ.get("VAPID_SUBJECT", "mailto:inscriptions@chantenscene.fr")

# Meta Graph API
FACEBOOK_PAGE_TOKEN = os.environ.get("FACEBOOK_PAGE_TOKEN", "")
INSTAGRAM_TOKEN = os.environ.get("INSTAGRAM_TOKEN", "")
INSTAGRAM_ACCOUNT_ID = os.environ.get("INSTAGRAM_ACCOUNT_ID", "")
META_APP_ID = os.environ.get("META_APP_ID", "")
META_APP_SECRET = os.environ.get("META_APP_SECRET", "")
