"""
donor_sync.api - Google People API client

Wraps the People API calls the sync engine needs.
"""

from donor_sync.api.people_api import PeopleAPI, PeopleAPIError, RateLimitError

__all__ = ["PeopleAPI", "PeopleAPIError", "RateLimitError"]
