"""Course platform (New Zenler) client for granting and revoking course access"""

import secrets
import string
from typing import Any, Dict, List, Optional

import httpx
import structlog

from mobilepay_bridge.config import settings

logger = structlog.get_logger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"
PASSWORD_LENGTH = 16


class CoursePlatformError(Exception):
    """Raised when the course platform rejects a request"""

    pass


class CoursePlatformClient:
    """HTTP client for the course platform user and enrollment API.

    Every public method is best-effort: failures are logged and reported
    through the return value, never raised to the caller.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        account_name: Optional[str] = None,
        course_ids: Optional[List[str]] = None,
    ):
        self.base_url = (base_url or settings.COURSE_PLATFORM_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.COURSE_PLATFORM_API_KEY
        self.account_name = (
            account_name if account_name is not None else settings.COURSE_PLATFORM_ACCOUNT_NAME
        )
        self.course_ids = course_ids if course_ids is not None else settings.course_ids_list
        self.timeout = settings.NOTIFICATION_TIMEOUT_SECONDS

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.account_name)

    def _get_headers(self) -> Dict[str, str]:
        return {
            "X-API-Key": self.api_key,
            "X-Account-Name": self.account_name,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Look up a user by email. Returns None if absent or on error."""
        if not self.is_configured:
            return None
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/users",
                    params={"search": email, "limit": 1},
                    headers=self._get_headers(),
                )
                response.raise_for_status()
                users = response.json().get("users") or []
                return users[0] if users else None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("course_platform_user_lookup_failed", email=email, error=str(e))
            return None

    async def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a student user, or return the existing one on conflict.

        Raises:
            CoursePlatformError: If the user could neither be created nor found
        """
        payload = {
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "password": generate_password(),
            "commission": 0,
            "roles": ["student"],
            "phone": phone or "",
            "gdpr_consent_status": 1,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/users", json=payload, headers=self._get_headers()
            )

        if response.status_code == 409:
            logger.info("course_platform_user_exists", email=email)
            existing = await self.find_user_by_email(email)
            if existing:
                return existing
            raise CoursePlatformError(f"User {email} reported as existing but not found")

        if response.status_code >= 400:
            raise CoursePlatformError(
                f"User creation failed with status {response.status_code}: {response.text}"
            )

        user = response.json()
        logger.info("course_platform_user_created", user_id=user.get("id"), email=email)
        return user

    async def enroll_customer(
        self,
        email: str,
        name: str,
        plan_type: str,
        phone: Optional[str] = None,
    ) -> bool:
        """Find or create the user and enroll them in every configured course."""
        if not self.is_configured:
            logger.warning("course_platform_not_configured", action="enroll", email=email)
            return False

        first_name, _, last_name = (name or "").partition(" ")
        try:
            user = await self.create_user(email, first_name, last_name, phone=phone)
            if not self.course_ids:
                logger.warning("course_platform_no_courses_configured", plan_type=plan_type)
                return True

            async with httpx.AsyncClient(timeout=self.timeout) as client:
                for course_id in self.course_ids:
                    response = await client.post(
                        f"{self.base_url}/users/{user['id']}/enroll",
                        json={"course_id": course_id},
                        headers=self._get_headers(),
                    )
                    response.raise_for_status()
                    logger.info("course_platform_enrolled", user_id=user["id"], course_id=course_id)
        except (httpx.HTTPError, CoursePlatformError, KeyError, ValueError) as e:
            logger.error("course_platform_enrollment_failed", email=email, plan_type=plan_type, error=str(e))
            return False

        logger.info(
            "course_platform_enrollment_completed",
            email=email,
            plan_type=plan_type,
            courses=len(self.course_ids),
        )
        return True

    async def remove_customer_access(self, email: str) -> bool:
        """Unenroll the user from every configured course."""
        if not self.is_configured:
            logger.warning("course_platform_not_configured", action="remove_access", email=email)
            return False

        user = await self.find_user_by_email(email)
        if not user:
            logger.warning("course_platform_user_not_found", email=email)
            return True

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                for course_id in self.course_ids:
                    response = await client.post(
                        f"{self.base_url}/users/{user['id']}/unenroll",
                        json={"course_id": course_id},
                        headers=self._get_headers(),
                    )
                    response.raise_for_status()
                    logger.info("course_platform_unenrolled", user_id=user["id"], course_id=course_id)
        except httpx.HTTPError as e:
            logger.error("course_platform_unenroll_failed", email=email, error=str(e))
            return False

        return True


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
