"""OAuth2 client driver.

Runs `client` recipes: a one-time browser-assisted Authorization Code + PKCE
login, then plain HTTP calls with the bearer token. Tokens are cached per
identity in the TokenStore and refreshed when expired.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import anyio
import httpx
from anyio import to_thread

from ..config import settings
from ..exceptions import AuthenticationError, NetworkError, TokenRefreshError, TokenStoreError
from ..tokens import Oauth2Tokens, TokenStore, token_identity
from ..utils import oauth2_pkce, random_string
from .browser_driver import BrowserPage
from .extract import extract_values
from .models import Oauth2Config, Step, StepAction, StepOutcome
from .session import RecipeSession, StepHandler

logger = logging.getLogger(__name__)

STATE_LENGTH = 20
HTTP_TIMEOUT = 30.0
TOKEN_PLACEHOLDER = "{{ token }}"
ID_PLACEHOLDER = "{{ id }}"


class ClientDriver:
    """Driver for `client` (OAuth2) recipes."""

    # Pauses letting the supplier's login form settle between interactions.
    IDENTITY_PAUSE = 1.0
    CREDENTIAL_FIELD_PAUSE = 3.0
    PASSWORD_PAUSE = 2.0
    REDIRECT_PAUSE = 5.0
    NAVIGATION_TIMEOUT = 5.0

    def __init__(
        self,
        session: RecipeSession,
        token_store: TokenStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        page: BrowserPage | None = None,
    ):
        self.session = session
        self.token_store = token_store or TokenStore(settings.get_token_file_path())
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._page = page
        self._page_started = False

        self.oauth2: Oauth2Config | None = None
        self.access_token = ""

    @property
    def identity(self) -> str:
        return token_identity(self.session.recipe.supplier, self.session.credentials.id)

    @property
    def new_files_count(self) -> int:
        return self.session.new_files_count

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            raise NetworkError("HTTP client is not started")
        return self._http_client

    async def start(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT, follow_redirects=True)

    async def close(self) -> None:
        if self._page is not None and self._page_started:
            await self._page.close()
            self._page_started = False
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def current_url(self) -> str:
        if self._page is None or not self._page_started:
            return ""
        return await self._page.current_url()

    def continue_after_timeout(self, step: Step) -> bool:
        return False

    def handlers(self) -> dict[StepAction, StepHandler]:
        return {
            StepAction.OAUTH2_SETUP: self.step_setup,
            StepAction.OAUTH2_CHECK_TOKENS: self.step_check_tokens,
            StepAction.OAUTH2_AUTHENTICATE: self.step_authenticate,
            StepAction.OAUTH2_POST_AND_GET_ITEMS: self.step_post_and_get_items,
        }

    def _require_config(self) -> Oauth2Config:
        if self.oauth2 is None:
            raise AuthenticationError("OAuth2 is not configured, the recipe needs an oauth2-setup step first")
        return self.oauth2

    # --- Token endpoint ---

    async def request_tokens(self, payload: dict[str, Any]) -> Oauth2Tokens:
        """POST a grant to the token endpoint, persist and return the tokens.

        Raises:
            NetworkError: On transport failure.
            AuthenticationError: If the endpoint rejects the grant or answers garbage.
        """
        config = self._require_config()
        try:
            resp = await self.http.post(config.token_url, json=payload)
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to send OAuth2 token request: {e}") from e

        if resp.status_code == 400:
            raise AuthenticationError("Unauthorized error while trying to get OAuth2 access token")
        if resp.status_code != 200:
            raise AuthenticationError(f"Unknown error getting OAuth2 token (HTTP {resp.status_code})")
        try:
            tokens = Oauth2Tokens.from_token_response(resp.json())
        except ValueError as e:
            raise AuthenticationError(f"Error reading OAuth2 token response: {e}") from e

        try:
            return await self.token_store.save_async(self.identity, tokens)
        except (OSError, TokenStoreError) as e:
            raise AuthenticationError(f"Error storing OAuth2 tokens: {e}") from e

    # --- Handlers ---

    async def step_setup(self, step: Step) -> StepOutcome:
        self.oauth2 = step.oauth2
        return StepOutcome.success("Successfully set up OAuth2 settings.")

    async def step_check_tokens(self, step: Step) -> StepOutcome:
        config = self._require_config()
        tokens = await self.token_store.get_async(self.identity)
        if tokens is None:
            return StepOutcome.soft_error("No access token found. New OAuth2 login needed.")

        if tokens.is_valid():
            self.access_token = tokens.access_token
            logger.info(f"Found valid OAuth2 access token in cache for {self.identity}")
            return StepOutcome.success("Found valid OAuth2 access token in cache")

        if not tokens.refresh_token:
            return StepOutcome.soft_error("No access token found. New OAuth2 login needed.")

        logger.info(f"Cached access token for {self.identity} expired, refreshing")
        try:
            refreshed = await self.request_tokens(
                {
                    "grant_type": "refresh_token",
                    "client_id": config.client_id,
                    "refresh_token": tokens.refresh_token,
                    "scope": config.scope,
                }
            )
        except (AuthenticationError, NetworkError) as e:
            raise TokenRefreshError(f"Error getting OAuth2 access token with refresh token: {e}") from e

        self.access_token = refreshed.access_token
        # The refreshed token is active, so the following oauth2-authenticate
        # step is a no-op success that overwrites this soft error.
        return StepOutcome.soft_error("Access token refreshed, continuing with authentication step")

    def build_login_url(self, challenge: str, state: str) -> str:
        config = self._require_config()
        params = {
            "client_id": config.client_id,
            "prompt": "login",
            "redirect_uri": config.redirect_url,
            "scope": config.scope,
            "response_type": "code",
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": config.pkce_method,
        }
        return f"{config.auth_url}?{urlencode(params)}"

    async def _login_page(self) -> BrowserPage:
        if self._page is None:
            self._page = BrowserPage(download_dir=self.session.staging_dir)
        if not self._page_started:
            await self._page.start()
            self._page_started = True
        return self._page

    async def browser_login(self, login_url: str) -> str:
        """Drive the supplier login form and return the final redirect URL.

        Raises:
            AuthenticationError: If any form interaction fails.
        """
        config = self._require_config()
        credentials = self.session.credentials
        try:
            page = await self._login_page()
            await page.navigate(login_url, wait_for_idle=False)
            await page.wait_for_network_idle(timeout=self.NAVIGATION_TIMEOUT)

            await page.type_text(config.identity_selector, credentials.username)
            await asyncio.sleep(self.IDENTITY_PAUSE)
            await page.click(config.submit_selector)

            await page.wait_for_selector(config.password_selector, visible=True)
            await asyncio.sleep(self.CREDENTIAL_FIELD_PAUSE)
            await page.type_text(config.password_selector, credentials.password)
            await asyncio.sleep(self.PASSWORD_PAUSE)
            await page.click(config.submit_selector)
            await asyncio.sleep(self.REDIRECT_PAUSE)

            if await page.count(config.otp_selector):
                logger.info("One-time passcode requested by login form")
                totp = await credentials.get_totp()
                if not totp:
                    raise AuthenticationError(f"Fetched TOTP for credential ID {credentials.id} is empty")
                await page.type_text(config.otp_selector, totp)
                await page.click(config.submit_selector)
                await asyncio.sleep(self.REDIRECT_PAUSE)

            return await page.current_url()
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Error while logging in: {e}") from e

    async def step_authenticate(self, step: Step) -> StepOutcome:
        if self.access_token:
            return StepOutcome.success()

        config = self._require_config()
        verifier, challenge = oauth2_pkce(config.pkce_verifier_length)
        state = random_string(STATE_LENGTH)

        final_url = await self.browser_login(self.build_login_url(challenge, state))
        query = parse_qs(urlparse(final_url).query)
        code = (query.get("code") or [""])[0]
        if not code:
            raise AuthenticationError("Login did not redirect with an authorization code")
        returned_state = (query.get("state") or [state])[0]
        if returned_state != state:
            raise AuthenticationError("OAuth2 state mismatch after login")

        tokens = await self.request_tokens(
            {
                "grant_type": "authorization_code",
                "client_id": config.client_id,
                "code_verifier": verifier,
                "code": code,
                "redirect_uri": config.redirect_url,
            }
        )
        self.access_token = tokens.access_token
        logger.info(f"Retrieved OAuth2 tokens for {self.identity}")
        return StepOutcome.success("Successfully retrieved OAuth2 tokens.")

    def _headers(self, headers: dict[str, str]) -> dict[str, str]:
        result = {"Content-Type": "application/json"}
        for name, value in headers.items():
            if name.lower() == "authorization":
                value = value.replace(TOKEN_PLACEHOLDER, self.access_token)
            result[name] = value
        return result

    async def _download(self, url: str, method: str, headers: dict[str, str], target: Path) -> None:
        try:
            async with self.http.stream(method, url, headers=self._headers(headers)) as resp:
                if resp.status_code != 200:
                    raise NetworkError(f"Error while downloading {url}: HTTP {resp.status_code}")
                async with await anyio.open_file(target, "wb") as out:
                    async for chunk in resp.aiter_bytes():
                        await out.write(chunk)
        except httpx.HTTPError as e:
            raise NetworkError(f"Error while downloading {url}: {e}") from e

    async def step_post_and_get_items(self, step: Step) -> StepOutcome:
        try:
            resp = await self.http.post(step.url, content=step.body.encode(), headers=self._headers(step.headers))
        except httpx.HTTPError as e:
            raise NetworkError(f"Error sending post request: {e}") from e
        if resp.status_code != 200:
            raise NetworkError(f"Listing request to {step.url} failed with HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise NetworkError(f"Listing response is not JSON: {e}") from e

        ids = extract_values(data, step.extract_document_ids)
        if not ids:
            return StepOutcome.fatal_error("No content ids found")
        filenames = extract_values(data, step.extract_document_filenames) if step.extract_document_filenames else []
        logger.info(f"Found {len(ids)} documents")

        for index, doc_id in enumerate(ids):
            filename = filenames[index] if index < len(filenames) else f"{doc_id}.pdf"
            # Only the base name, so a crafted filename cannot leave the staging dir.
            target = self.session.staging_dir / (Path(filename).name or f"{Path(doc_id).name}.pdf")
            url = step.document_url.replace(ID_PLACEHOLDER, doc_id)
            await self._download(url, step.document_request_method, step.document_request_headers, target)
            await to_thread.run_sync(self.session.archive_file, target)

        return StepOutcome.success()
