"""
registry.py — Communities, user handles and phone mappings.

These are point reads/writes against the store's key-value side, run as
plain sequential steps. Each step either returns or raises, so a failing
step stops the flow before anything after it is written.

═══════════════════════════════════════════════════════════════════════════
SETUP FLOW  (CommunityRegistry.connect)
═══════════════════════════════════════════════════════════════════════════

    1. validate           community name and own phone are required
    2. phone lookup       phone_mappings/{phone} → existing handle?
         ├─ found         recover it as this device's handle
         └─ not found     use (or allocate) the local handle and
                          write phone_mappings + users/{handle}/phone
    3. community          create: existence check, then write metadata
                          join:   existence check only
    4. preferences        COMMUNITY_ID, MY_PHONE, EMERGENCY_PHONE

Handles look like USER-8X2: a fixed prefix plus a short random suffix,
reserved with a write-if-absent so two devices never share one.
"""

from __future__ import annotations

import logging
import random
import string
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from backend.app.alerts.freshness import now_ms
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.errors import (
    ConflictError,
    IdentityError,
    NotFoundError,
    ValidationError,
)
from backend.app.core.preferences import PreferenceKey, PreferenceStore
from backend.app.store.base import (
    COMMUNITIES_ROOT,
    HANDLES_ROOT,
    PHONE_MAPPINGS_ROOT,
    USERS_ROOT,
    AlertStoreClient,
)

logger = logging.getLogger(__name__)

HANDLE_ALPHABET = string.ascii_uppercase + string.digits
_KEY_UNSAFE = ".#$[]"


# ═══════════════════════════════════════════════════════════════════════════
# Store Operations
# ═══════════════════════════════════════════════════════════════════════════

def sanitize_phone(phone: str) -> str:
    """Make a phone number usable as a single store path segment."""
    cleaned = phone.strip()
    for ch in _KEY_UNSAFE + "/":
        cleaned = cleaned.replace(ch, "_")
    return cleaned


def generate_unique_handle(
    store: AlertStoreClient,
    *,
    rng: Optional[random.Random] = None,
    prefix: Optional[str] = None,
    suffix_length: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> str:
    """
    Pick a random handle and reserve it. Retries on collision.

    Raises IdentityError when every attempt collided.
    """
    rng = rng or random.SystemRandom()
    prefix = prefix if prefix is not None else default_settings.HANDLE_PREFIX
    length = suffix_length or default_settings.HANDLE_SUFFIX_LENGTH
    attempts = max_attempts or default_settings.HANDLE_MAX_ATTEMPTS

    for attempt in range(1, attempts + 1):
        suffix = "".join(rng.choice(HANDLE_ALPHABET) for _ in range(length))
        handle = f"{prefix}{suffix}"
        if store.set_if_absent(f"{HANDLES_ROOT}/{handle}", True):
            logger.info("Reserved handle %s (attempt %d)", handle, attempt)
            return handle
        logger.debug("Handle %s taken, retrying", handle)

    raise IdentityError(
        f"Could not allocate a unique handle after {attempts} attempts",
        attempts=attempts,
    )


def create_community(
    store: AlertStoreClient,
    name: str,
    creator: str,
    *,
    clock: Callable[[], int] = now_ms,
) -> Dict[str, Any]:
    """Create a community; fails if the name is already taken."""
    name = _require(name, "name", "Please enter a community name")
    path = f"{COMMUNITIES_ROOT}/{name}"

    if store.exists(path):
        raise ConflictError(
            "Community",
            "Name exists, kindly choose a different one",
            name=name,
        )
    meta = {"creator": creator, "createdAt": clock()}
    store.set(path, meta)
    logger.info("Community %s created by %s", name, creator, extra={"community_id": name})
    return meta


def join_community(store: AlertStoreClient, name: str) -> Dict[str, Any]:
    """Check that a community exists and return its metadata."""
    name = _require(name, "name", "Please enter a community name")
    meta = store.get(f"{COMMUNITIES_ROOT}/{name}")
    if meta is None:
        raise NotFoundError("Community", "Community does not exist", name=name)
    return meta


def get_user_id_by_phone(store: AlertStoreClient, phone: str) -> Optional[str]:
    """Handle registered for a phone number, or None."""
    value = store.get(f"{PHONE_MAPPINGS_ROOT}/{sanitize_phone(phone)}")
    if isinstance(value, str) and value:
        return value
    return None


def save_user_mapping(store: AlertStoreClient, phone: str, handle: str) -> None:
    """Record phone → handle and handle → phone."""
    store.set(f"{PHONE_MAPPINGS_ROOT}/{sanitize_phone(phone)}", handle)
    store.set(f"{USERS_ROOT}/{handle}/phone", phone)


def _require(value: Optional[str], field: str, message: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(message, field=field)
    if "/" in value:
        raise ValidationError(f"'{field}' must not contain '/'", field=field)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# Setup Flow
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SetupResult:
    handle: str
    community_id: str
    created: bool
    recovered: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "community_id": self.community_id,
            "created": self.created,
            "recovered": self.recovered,
        }


class CommunityRegistry:
    """Identity and community membership for this device."""

    def __init__(
        self,
        store: AlertStoreClient,
        preferences: PreferenceStore,
        *,
        config: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.preferences = preferences
        self.config = config or default_settings
        self.rng = rng
        self.clock = clock

    def ensure_handle(self) -> str:
        """This device's handle, allocating and saving one on first use."""
        handle = self.preferences.get_handle()
        if handle:
            return handle
        handle = generate_unique_handle(
            self.store,
            rng=self.rng,
            prefix=self.config.HANDLE_PREFIX,
            suffix_length=self.config.HANDLE_SUFFIX_LENGTH,
            max_attempts=self.config.HANDLE_MAX_ATTEMPTS,
        )
        self.preferences.set_handle(handle)
        return handle

    def register_phone(self, phone: str) -> Tuple[str, bool]:
        """
        Recover the handle already mapped to ``phone`` or register the
        local one for it. Returns ``(handle, recovered)``.
        """
        phone = (phone or "").strip()
        if not phone:
            raise ValidationError("Your phone number is required for identity", field="phone")
        existing = get_user_id_by_phone(self.store, phone)
        if existing:
            if existing != self.preferences.get_handle():
                logger.info("Recovered handle %s for registered phone", existing)
                self.preferences.set_handle(existing)
            return existing, True

        handle = self.ensure_handle()
        save_user_mapping(self.store, phone, handle)
        return handle, False

    def connect(
        self,
        name: str,
        my_phone: str,
        *,
        emergency_phone: str = "",
        create: bool = False,
    ) -> SetupResult:
        """Run the whole setup flow; see module docstring for the steps."""
        name = _require(name, "name", "Please enter a community name")
        handle, recovered = self.register_phone(my_phone)

        if create:
            create_community(self.store, name, handle, clock=self.clock)
        else:
            join_community(self.store, name)

        self.preferences.update({
            PreferenceKey.COMMUNITY_ID: name,
            PreferenceKey.MY_PHONE: my_phone.strip(),
            PreferenceKey.EMERGENCY_PHONE: emergency_phone.strip(),
        })
        logger.info(
            "%s community %s as %s", "Created" if create else "Joined", name, handle,
            extra={"community_id": name},
        )
        return SetupResult(
            handle=handle,
            community_id=name,
            created=create,
            recovered=recovered,
        )
