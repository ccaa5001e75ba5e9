"""Homely cloud REST client.

Handles OAuth2 token acquisition/refresh and the two one-shot snapshot calls
the bridge needs at startup: the account's location and the full home state.
"""

from __future__ import annotations

import datetime
from typing import cast

import aiohttp
from pydantic import BaseModel, ValidationError, computed_field

from homely2mqtt.const import HOMELY_API_BASE, HOMELY_API_TIMEOUT
from homely2mqtt.homely.exceptions import (
    HomelyAPIError,
    HomelyAuthenticationError,
    HomelyConfigError,
    LocationCountError,
    UnsupportedLocationsError,
)
from homely2mqtt.homely.models import Home, Location
from homely2mqtt.instrumentation import timed_async
from homely2mqtt.logging_abstraction import get_logger

logger = get_logger(__name__)

# renew this long before the vendor says the token expires
TOKEN_EXPIRY_MARGIN = datetime.timedelta(seconds=30)


class RawTokenData(BaseModel):
    """Model for the token endpoint response.

    API Auth Response structure:
        {
            'access_token': '...',
            'expires_in': 60,
            'refresh_expires_in': 1800,
            'refresh_token': '...',
            'token_type': 'bearer',
            ...
        }
    """

    access_token: str
    expires_in: int | None = None
    refresh_token: str | None = None
    refresh_expires_in: int | None = None


class ComputedTokenData(RawTokenData):
    """Token data with the time it was issued and derived expiry instants."""

    issued_at: datetime.datetime

    @computed_field
    @property
    def expires_at(self) -> datetime.datetime | None:
        if self.expires_in is None:
            return None
        return self.issued_at + datetime.timedelta(seconds=self.expires_in)

    @computed_field
    @property
    def refresh_expires_at(self) -> datetime.datetime | None:
        if not self.refresh_token or self.refresh_expires_in is None:
            return None
        return self.issued_at + datetime.timedelta(seconds=self.refresh_expires_in)

    def access_valid(self, now: datetime.datetime) -> bool:
        return self.expires_at is None or self.expires_at - TOKEN_EXPIRY_MARGIN > now

    def refresh_valid(self, now: datetime.datetime) -> bool:
        if not self.refresh_token:
            return False
        return self.refresh_expires_at is None or self.refresh_expires_at - TOKEN_EXPIRY_MARGIN > now


class HomelyCloudAPI:
    """REST client for the Homely SDK API.

    Owns one aiohttp ClientSession (created lazily, closed by `close()`) and
    the current token. Tokens are kept in memory only.
    """

    lp: str = "HomelyCloudAPI"

    def __init__(
        self,
        username: str | None,
        password: str | None,
        api_base: str = HOMELY_API_BASE,
        api_timeout: int = HOMELY_API_TIMEOUT,
    ) -> None:
        if not username or not password:
            msg = "Homely username and password must be set (HOMELY_USERNAME / HOMELY_PASSWORD)"
            raise HomelyConfigError(msg)
        self.username: str = username
        self.password: str = password
        self.api_base: str = api_base if api_base.endswith("/") else f"{api_base}/"
        self.api_timeout: int = api_timeout
        self.token_cache: ComputedTokenData | None = None
        self.http_session: aiohttp.ClientSession | None = None

    async def close(self) -> None:
        """Close the aiohttp session if it exists and is not closed."""
        lp = f"{self.lp}:close:"
        if self.http_session and not self.http_session.closed:
            logger.debug("%s Closing aiohttp ClientSession", lp)
            await self.http_session.close()
        self.http_session = None

    async def _check_session(self) -> aiohttp.ClientSession:
        if not self.http_session or self.http_session.closed:
            logger.debug("%s:_check_session: Creating new aiohttp ClientSession", self.lp)
            self.http_session = aiohttp.ClientSession()
        return self.http_session

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.api_timeout)

    async def _post_token(self, url: str, payload: dict[str, str], lp: str) -> ComputedTokenData:
        sesh = await self._check_session()
        issued_at = datetime.datetime.now(datetime.UTC)
        try:
            async with sesh.post(url, json=payload, timeout=self._timeout()) as r:
                r.raise_for_status()
                json_result: object = cast("object", await r.json())
        except aiohttp.ClientResponseError as e:
            logger.warning(
                "%s Token request rejected",
                lp,
                extra={"status": e.status, "error": str(e)},
            )
            raise HomelyAuthenticationError(e.message or "token request rejected", e.status) from e
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise HomelyAuthenticationError(f"{type(e).__name__}: {e}") from e

        if not isinstance(json_result, dict):
            msg = f"invalid token response format: {type(json_result).__name__}"
            raise HomelyAuthenticationError(msg)
        try:
            raw = RawTokenData.model_validate(json_result)
        except ValidationError as e:
            msg = f"missing required fields in token response: {e.error_count()} error(s)"
            raise HomelyAuthenticationError(msg) from e
        return ComputedTokenData(**raw.model_dump(), issued_at=issued_at)

    async def login(self) -> ComputedTokenData:
        """Exchange username/password for a fresh token."""
        lp = f"{self.lp}:login:"
        logger.debug("%s Requesting token for %s", lp, self.username)
        self.token_cache = await self._post_token(
            f"{self.api_base}oauth/token",
            {"username": self.username, "password": self.password},
            lp,
        )
        logger.info("%s Token acquired", lp, extra={"expires_at": self.token_cache.expires_at})
        return self.token_cache

    async def refresh(self) -> ComputedTokenData:
        """Trade the cached refresh token for a new access token."""
        lp = f"{self.lp}:refresh:"
        if not self.token_cache or not self.token_cache.refresh_token:
            msg = "no refresh token cached"
            raise HomelyAuthenticationError(msg)
        self.token_cache = await self._post_token(
            f"{self.api_base}oauth/refresh-token",
            {"refresh_token": self.token_cache.refresh_token},
            lp,
        )
        logger.debug("%s Token refreshed", lp)
        return self.token_cache

    async def get_access_token(self) -> str:
        """Return a valid access token, refreshing or logging in as needed.

        Raises:
            HomelyAuthenticationError: if no token could be obtained

        """
        lp = f"{self.lp}:get_access_token:"
        now = datetime.datetime.now(datetime.UTC)
        token = self.token_cache
        if token and token.access_valid(now):
            return token.access_token
        if token and token.refresh_valid(now):
            try:
                return (await self.refresh()).access_token
            except HomelyAuthenticationError as e:
                logger.info("%s Refresh failed (%s), logging in again", lp, e)
        return (await self.login()).access_token

    def invalidate_token(self) -> None:
        self.token_cache = None

    async def _get_json(self, path: str) -> object:
        lp = f"{self.lp}:get:"
        url = f"{self.api_base}{path}"
        token = await self.get_access_token()
        sesh = await self._check_session()
        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with sesh.get(url, headers=headers, timeout=self._timeout()) as r:
                r.raise_for_status()
                return cast("object", await r.json())
        except aiohttp.ClientResponseError as e:
            if e.status == 401:
                # token revoked server side, next call starts from a fresh login
                self.invalidate_token()
            logger.warning("%s HTTP %s from %s", lp, e.status, url)
            raise HomelyAPIError(e.message or "bad response", url, e.status) from e
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise HomelyAPIError(f"{type(e).__name__}: {e}", url) from e

    @timed_async("get_location")
    async def get_location(self) -> Location:
        """Return the account's single location.

        Raises:
            LocationCountError: no location on the account
            UnsupportedLocationsError: more than one location
            HomelyAPIError: request or decoding failure

        """
        lp = f"{self.lp}:get_location:"
        raw = await self._get_json("locations")
        if not isinstance(raw, list):
            msg = f"unable to unmarshal locations, expected a list, found {type(raw).__name__}"
            raise HomelyAPIError(msg, f"{self.api_base}locations")
        try:
            locations = [Location.model_validate(item) for item in raw]
        except ValidationError as e:
            msg = f"unable to unmarshal locations: {e.error_count()} error(s)"
            raise HomelyAPIError(msg, f"{self.api_base}locations") from e

        if not locations:
            raise LocationCountError
        if len(locations) > 1:
            raise UnsupportedLocationsError(len(locations))

        location = locations[0]
        logger.info(
            "%s Found location '%s'",
            lp,
            location.name,
            extra={"location_id": location.location_id, "role": location.role},
        )
        return location

    @timed_async("get_home")
    async def get_home(self, location_id: str) -> Home:
        """Return the full home snapshot (alarm state and every device).

        Raises:
            HomelyAPIError: request or decoding failure

        """
        lp = f"{self.lp}:get_home:"
        path = f"home/{location_id}"
        raw = await self._get_json(path)
        try:
            home = Home.model_validate(raw)
        except ValidationError as e:
            msg = f"unable to decode body to Home: {e.error_count()} error(s)"
            raise HomelyAPIError(msg, f"{self.api_base}{path}") from e
        logger.info(
            "%s Home '%s' loaded",
            lp,
            home.name,
            extra={"devices": len(home.devices), "alarm_state": home.alarm_state},
        )
        return home
