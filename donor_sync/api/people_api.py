"""
Google People API wrapper for donor synchronization.

Provides a high-level interface to the Google People API for:
- Resolving (or creating) the managed contact group
- Loading the members of that group in batches
- Creating and updating contacts
- Exponential backoff retry logic for rate limits
- A per-request socket timeout
"""

import logging
import time
from collections.abc import Callable
from typing import Any, Optional

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from donor_sync.sync.person import ExternalPerson

# Person fields to request from the API
PERSON_FIELDS = ",".join(
    [
        "names",
        "nicknames",
        "relations",
        "biographies",
        "externalIds",
        "emailAddresses",
        "phoneNumbers",
        "addresses",
        "userDefined",
        "memberships",
        "metadata",
    ]
)

# Fields written on update; memberships are left alone
UPDATE_PERSON_FIELDS = ",".join(
    [
        "names",
        "nicknames",
        "relations",
        "biographies",
        "externalIds",
        "emailAddresses",
        "phoneNumbers",
        "addresses",
        "userDefined",
    ]
)

GROUP_FIELDS = "name,groupType,memberCount,metadata"

# Maximum number of groups per page when listing
DEFAULT_PAGE_SIZE = 100

# people.getBatchGet accepts at most 200 resource names
BATCH_GET_SIZE = 200

DEFAULT_MAX_MEMBERS = 10000

# Retry configuration defaults
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 60.0  # seconds
DEFAULT_TIMEOUT = 30.0  # seconds

logger = logging.getLogger(__name__)


class PeopleAPIError(Exception):
    """Raised when a People API operation fails."""

    pass


class RateLimitError(PeopleAPIError):
    """Raised when rate limit is exceeded and retries are exhausted."""

    pass


class PeopleAPI:
    """
    Google People API wrapper for the managed contact group.

    Attributes:
        credentials: Google OAuth2 credentials
        timeout: Socket timeout applied to every request, in seconds
        service: Google API service object

    Usage:
        api = PeopleAPI(credentials, timeout=30)

        group = api.get_or_create_contact_group("Donation Platform")
        people = api.list_group_members(group)

        created = api.create_contact(body)
        updated = api.update_contact(body, created.resource_name, created.etag)
    """

    def __init__(
        self,
        credentials: Credentials,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_members: int = DEFAULT_MAX_MEMBERS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
    ):
        """
        Initialize the People API wrapper.

        Args:
            credentials: Valid Google OAuth2 credentials with contacts scope
            timeout: Socket timeout per request in seconds (default 30)
            page_size: Number of groups per page when listing (default 100)
            max_members: Maximum group members loaded (default 10000)
            max_retries: Maximum retry attempts for failed API calls (default 5)
            initial_retry_delay: Initial backoff delay in seconds (default 1.0)
            max_retry_delay: Maximum backoff delay in seconds (default 60.0)
        """
        self.credentials = credentials
        self.timeout = timeout
        self.page_size = min(page_size, 1000)  # API max is 1000
        self.max_members = max_members
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self._service = None

    @property
    def service(self) -> Any:
        """
        Get or create the Google API service object.

        Requests go through an authorized httplib2 client carrying the
        configured timeout.

        Raises:
            PeopleAPIError: If service cannot be created
        """
        if self._service is None:
            try:
                http = google_auth_httplib2.AuthorizedHttp(
                    self.credentials, http=httplib2.Http(timeout=self.timeout)
                )
                self._service = build(
                    "people", "v1", http=http, cache_discovery=False
                )
                logger.debug("Created People API service")
            except Exception as e:
                logger.error(f"Failed to create People API service: {e}")
                raise PeopleAPIError(f"Failed to create API service: {e}") from e
        return self._service

    def _retry_with_backoff(
        self, operation: Callable[[], Any], operation_name: str
    ) -> Any:
        """
        Execute an operation with exponential backoff retry.

        Args:
            operation: Callable to execute
            operation_name: Name for logging purposes

        Returns:
            Result of the operation

        Raises:
            RateLimitError: If retries are exhausted due to rate limits
            PeopleAPIError: For timeouts and other API errors
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            try:
                return operation()

            except TimeoutError as e:
                logger.error(f"{operation_name} timed out after {self.timeout}s")
                raise PeopleAPIError(
                    f"{operation_name} timed out after {self.timeout}s"
                ) from e

            except HttpError as e:
                status_code = e.resp.status

                # Rate limit or quota exceeded - retry with backoff
                if status_code in (429, 403):
                    if attempt < self.max_retries - 1:
                        logger.warning(
                            f"{operation_name} rate limited, retrying in "
                            f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                        )
                        time.sleep(delay)
                        delay = min(delay * 2, self.max_retry_delay)
                        continue
                    raise RateLimitError(
                        f"Rate limit exceeded for {operation_name} "
                        f"after {self.max_retries} retries"
                    ) from e

                # Server error - retry with backoff
                if status_code >= 500 and attempt < self.max_retries - 1:
                    logger.warning(
                        f"{operation_name} server error ({status_code}), "
                        f"retrying in {delay:.1f}s"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue

                logger.error(f"{operation_name} failed with status {status_code}: {e}")
                raise PeopleAPIError(f"{operation_name} failed: {e}") from e

        raise PeopleAPIError(f"{operation_name} failed after all retries")

    @staticmethod
    def _http_status(error: PeopleAPIError) -> Optional[int]:
        cause = error.__cause__
        if isinstance(cause, HttpError):
            return int(cause.resp.status)
        return None

    # =========================================================================
    # Contact groups
    # =========================================================================

    def list_contact_groups(self) -> list[dict[str, Any]]:
        """
        List all contact groups for the authenticated user.

        Returns both user-created groups and system groups; system groups can
        be identified by their groupType field.

        Returns:
            List of contact group dicts

        Raises:
            PeopleAPIError: If listing fails
        """
        logger.debug("Listing contact groups")

        groups: list[dict[str, Any]] = []
        page_token: Optional[str] = None

        while True:
            params: dict[str, Any] = {
                "pageSize": self.page_size,
                "groupFields": GROUP_FIELDS,
            }
            if page_token:
                params["pageToken"] = page_token

            def execute_list(p: dict[str, Any] = params) -> Any:
                return self.service.contactGroups().list(**p).execute()

            response = self._retry_with_backoff(execute_list, "list_contact_groups")
            groups.extend(response.get("contactGroups", []))

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.debug(f"Listed {len(groups)} contact groups")
        return groups

    def find_contact_group(self, name: str) -> Optional[str]:
        """
        Find a user contact group by name.

        Args:
            name: Group name to look for

        Returns:
            The group's resource name, or None if no such group exists
        """
        for group in self.list_contact_groups():
            if (
                group.get("name") == name
                and group.get("groupType", "USER_CONTACT_GROUP") == "USER_CONTACT_GROUP"
            ):
                return str(group["resourceName"])
        return None

    def create_contact_group(self, name: str) -> dict[str, Any]:
        """
        Create a new contact group.

        Args:
            name: Name for the new contact group

        Returns:
            Created contact group dict from API

        Raises:
            PeopleAPIError: If creation fails (e.g., 409 if name already exists)
        """
        logger.debug(f"Creating contact group: {name}")

        body = {"contactGroup": {"name": name}}

        def execute_create() -> Any:
            return self.service.contactGroups().create(body=body).execute()

        try:
            response = self._retry_with_backoff(
                execute_create, f"create_contact_group({name})"
            )
        except PeopleAPIError as e:
            if self._http_status(e) == 409:
                raise PeopleAPIError(
                    f"Contact group with name '{name}' already exists"
                ) from e
            raise

        logger.info(f"Created contact group: {response.get('resourceName')} ({name})")
        return dict(response)

    def get_or_create_contact_group(self, name: str) -> str:
        """
        Resolve the managed group, creating it when it does not exist.

        Args:
            name: Group name

        Returns:
            The group's resource name (e.g., "contactGroups/abc123")
        """
        resource_name = self.find_contact_group(name)
        if resource_name:
            return resource_name
        return str(self.create_contact_group(name)["resourceName"])

    def get_group_member_names(self, group_resource_name: str) -> list[str]:
        """
        Get the resource names of a group's members.

        Args:
            group_resource_name: Group's resource name

        Returns:
            List of person resource names (e.g., "people/c12345")

        Raises:
            PeopleAPIError: If the group is not found or the request fails
        """
        params: dict[str, Any] = {
            "resourceName": group_resource_name,
            "groupFields": GROUP_FIELDS,
            "maxMembers": self.max_members,
        }

        def execute_get() -> Any:
            return self.service.contactGroups().get(**params).execute()

        try:
            response = self._retry_with_backoff(
                execute_get, f"get_contact_group({group_resource_name})"
            )
        except PeopleAPIError as e:
            if self._http_status(e) == 404:
                raise PeopleAPIError(
                    f"Contact group not found: {group_resource_name}"
                ) from e
            raise

        members = list(response.get("memberResourceNames", []))
        if len(members) < int(response.get("memberCount", len(members))):
            logger.warning(
                f"Group {group_resource_name} has {response.get('memberCount')} "
                f"members, only {len(members)} loaded"
            )
        return members

    def list_group_members(self, group_resource_name: str) -> list[ExternalPerson]:
        """
        Load every person in a contact group.

        Members are fetched with people.getBatchGet in chunks of 200.

        Args:
            group_resource_name: Group's resource name

        Returns:
            List of ExternalPerson

        Raises:
            PeopleAPIError: If a request fails
        """
        resource_names = self.get_group_member_names(group_resource_name)
        people: list[ExternalPerson] = []

        for i in range(0, len(resource_names), BATCH_GET_SIZE):
            chunk = resource_names[i : i + BATCH_GET_SIZE]

            def execute_batch_get(names: list[str] = chunk) -> Any:
                return (
                    self.service.people()
                    .getBatchGet(resourceNames=names, personFields=PERSON_FIELDS)
                    .execute()
                )

            response = self._retry_with_backoff(
                execute_batch_get, f"get_batch_people({len(chunk)})"
            )
            for entry in response.get("responses", []):
                person = entry.get("person")
                if not person:
                    logger.debug(
                        f"No person returned for {entry.get('requestedResourceName')}"
                    )
                    continue
                people.append(ExternalPerson.from_api_response(person))

        logger.info(f"Loaded {len(people)} contacts from {group_resource_name}")
        return people

    # =========================================================================
    # Contacts
    # =========================================================================

    def create_contact(self, body: dict[str, Any]) -> ExternalPerson:
        """
        Create a new contact.

        Args:
            body: Person dictionary in People API format

        Returns:
            Created ExternalPerson with resource_name and etag populated

        Raises:
            PeopleAPIError: If creation fails
        """
        def execute_create() -> Any:
            return (
                self.service.people()
                .createContact(body=body, personFields=PERSON_FIELDS)
                .execute()
            )

        response = self._retry_with_backoff(execute_create, "create_contact")
        created = ExternalPerson.from_api_response(response)

        logger.debug(f"Created contact: {created.resource_name}")
        return created

    def update_contact(
        self,
        body: dict[str, Any],
        resource_name: str,
        etag: Optional[str] = None,
    ) -> ExternalPerson:
        """
        Update an existing contact.

        Args:
            body: Person dictionary in People API format
            resource_name: Resource name to update
            etag: Etag for optimistic locking

        Returns:
            Updated ExternalPerson with new etag

        Raises:
            PeopleAPIError: If update fails
            ValueError: If resource_name is missing
        """
        if not resource_name:
            raise ValueError("resource_name is required for update")

        body = dict(body)
        if etag:
            body["etag"] = etag

        def execute_update() -> Any:
            return (
                self.service.people()
                .updateContact(
                    resourceName=resource_name,
                    body=body,
                    updatePersonFields=UPDATE_PERSON_FIELDS,
                    personFields=PERSON_FIELDS,
                )
                .execute()
            )

        try:
            response = self._retry_with_backoff(
                execute_update, f"update_contact({resource_name})"
            )
        except PeopleAPIError as e:
            status = self._http_status(e)
            if status == 409 or (status == 400 and "etag" in str(e).lower()):
                raise PeopleAPIError(
                    f"Contact {resource_name} was modified by another client. "
                    f"Please refresh and try again."
                ) from e
            if status == 404:
                raise PeopleAPIError(f"Contact not found: {resource_name}") from e
            raise

        logger.debug(f"Updated contact: {resource_name}")
        return ExternalPerson.from_api_response(response)
