import requests
from loguru import logger

from config import EMAIL_FROM, RESEND_API_KEY

RESEND_API_URL = "https://api.resend.com/emails"


def send_premium_confirmation_email(email: str, user_name: str) -> bool:
    """Send the premium welcome mail. Failures are logged, never raised."""
    if not RESEND_API_KEY:
        logger.warning("RESEND_API_KEY not set; skipping premium email to {}", email)
        return False
    payload = {
        "from": EMAIL_FROM,
        "to": [email],
        "subject": "Welcome to the Premium Plan",
        "html": f"<h1>Welcome to the Premium Plan, {user_name}!</h1>",
    }
    headers = {"Authorization": f"Bearer {RESEND_API_KEY}", "Content-Type": "application/json"}
    try:
        resp = requests.post(RESEND_API_URL, headers=headers, json=payload, timeout=30)
        resp.raise_for_status()
    except requests.RequestException:
        logger.exception("Failed to send premium confirmation email to {}", email)
        return False
    return True
