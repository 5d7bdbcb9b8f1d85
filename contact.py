import re
from typing import Optional
from urllib.parse import quote

from errors import ContactUnavailableError

# Characters encodeURIComponent leaves alone besides -_.~
URI_COMPONENT_SAFE = "!'()*"


def whatsapp_url(phone_number: Optional[str], product_name: str) -> str:
    """wa.me link to the seller with a greeting about the listing pre-filled."""
    digits = re.sub(r"\D", "", phone_number or "")
    if not digits:
        raise ContactUnavailableError()
    message = f'Hello! I\'m interested in your "{product_name}" on Campus Market.'
    return f"https://wa.me/{digits}?text={quote(message, safe=URI_COMPONENT_SAFE)}"
