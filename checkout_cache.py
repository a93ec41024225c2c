"""
Checkout Form Cache
===================
Local durable cache for in-progress checkout form data.

Survives app restarts; the cart itself is not stored here. Read on
startup, written on change, cleared after a successful submission.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# Fields the checkout form persists
FORM_FIELDS = (
    "address",
    "hall_hostel",
    "room_number",
    "phone",
    "special_instructions",
    "payment_method",
)


class CheckoutFormCache:
    """JSON-file key-value cache for one checkout form."""

    def __init__(self, path: Optional[str] = None):
        if path is None:
            from config import get_config
            path = get_config().checkout.cache_path

        self.path = Path(path)

    def load(self) -> Optional[Dict[str, str]]:
        """
        Read the cached form.

        Returns:
            Form dict, or None if absent or unreadable
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                "Checkout form cache unreadable, ignoring",
                extra={"path": str(self.path), "error": str(e)}
            )
            return None

        if not isinstance(data, dict):
            logger.warning(
                "Checkout form cache has unexpected shape, ignoring",
                extra={"path": str(self.path)}
            )
            return None

        return {
            key: str(value)
            for key, value in data.items()
            if key in FORM_FIELDS and value is not None
        }

    def save(self, form: Dict[str, Any]):
        """
        Write the form (unknown keys dropped).

        Uses write-to-temp-then-rename so a crash never leaves a
        half-written file.
        """
        data = {
            key: str(value)
            for key, value in form.items()
            if key in FORM_FIELDS and value is not None
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=".checkout_form_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

        logger.debug("Checkout form cached", extra={"path": str(self.path)})

    def update(self, **fields: Any) -> Dict[str, str]:
        """Merge fields into the cached form and save."""
        form = self.load() or {}
        form.update({k: v for k, v in fields.items() if v is not None})
        self.save(form)
        return self.load() or {}

    def clear(self):
        """Remove the cached form (no-op if absent)."""
        try:
            self.path.unlink()
            logger.debug("Checkout form cache cleared", extra={"path": str(self.path)})
        except FileNotFoundError:
            pass
