"""Data models for supplier recipes and their execution results.

A recipe is a declarative, versioned script describing how to fetch documents
from one supplier. Recipes come from the recipe database (camelCase JSON) or
from local override files; `from_dict` accepts that wire format and `to_dict`
writes it back.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from ..exceptions import RecipeValidationError


def _int_field(data: dict[str, Any], key: str, default: int) -> int:
    raw = data.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise RecipeValidationError(f"{key} must be an integer, got {raw!r}") from e


class RecipeType(str, Enum):
    """Driver a recipe runs on."""

    BROWSER = "browser"
    CLIENT = "client"


class StepAction(str, Enum):
    """Step actions, valued by their wire names."""

    OPEN = "open"
    CLICK = "click"
    TYPE = "type"
    SLEEP = "sleep"
    WAIT_FOR = "waitFor"
    DOWNLOAD_ALL = "downloadAll"
    REMOVE_ELEMENT = "removeElement"
    TRANSFORM = "transform"
    MOVE = "move"
    RUN_SCRIPT = "runScript"
    RUN_SCRIPT_DOWNLOAD_URLS = "runScriptDownloadUrls"
    OAUTH2_SETUP = "oauth2-setup"
    OAUTH2_CHECK_TOKENS = "oauth2-check-tokens"
    OAUTH2_AUTHENTICATE = "oauth2-authenticate"
    OAUTH2_POST_AND_GET_ITEMS = "oauth2-post-and-get-items"


BROWSER_ACTIONS = frozenset(
    {
        StepAction.OPEN,
        StepAction.CLICK,
        StepAction.TYPE,
        StepAction.SLEEP,
        StepAction.WAIT_FOR,
        StepAction.DOWNLOAD_ALL,
        StepAction.REMOVE_ELEMENT,
        StepAction.TRANSFORM,
        StepAction.MOVE,
        StepAction.RUN_SCRIPT,
        StepAction.RUN_SCRIPT_DOWNLOAD_URLS,
    }
)

CLIENT_ACTIONS = frozenset(
    {
        StepAction.OAUTH2_SETUP,
        StepAction.OAUTH2_CHECK_TOKENS,
        StepAction.OAUTH2_AUTHENTICATE,
        StepAction.OAUTH2_POST_AND_GET_ITEMS,
    }
)

_SELECTOR_ACTIONS = frozenset(
    {
        StepAction.CLICK,
        StepAction.TYPE,
        StepAction.WAIT_FOR,
        StepAction.DOWNLOAD_ALL,
        StepAction.REMOVE_ELEMENT,
    }
)

SelectorType = Literal["Search", "Query", "XPath", "JSPath", "ID"]
_SELECTOR_TYPES = frozenset(("Search", "Query", "XPath", "JSPath", "ID"))

TRANSFORM_UNZIP = "unzip"

DEFAULT_IDENTITY_SELECTOR = "#form-input-identity"
DEFAULT_PASSWORD_SELECTOR = "#form-input-credential"
DEFAULT_SUBMIT_SELECTOR = "#form-submit-continue"
DEFAULT_OTP_SELECTOR = "#form-input-passcode"


@dataclass(frozen=True)
class Oauth2Config:
    """Static OAuth2 application settings captured by the oauth2-setup step."""

    auth_url: str
    token_url: str
    redirect_url: str
    client_id: str
    scope: str = ""
    pkce_method: str = "S256"
    pkce_verifier_length: int = 64

    # Login form used by the browser-assisted authorization code flow
    identity_selector: str = DEFAULT_IDENTITY_SELECTOR
    password_selector: str = DEFAULT_PASSWORD_SELECTOR
    submit_selector: str = DEFAULT_SUBMIT_SELECTOR
    otp_selector: str = DEFAULT_OTP_SELECTOR

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Oauth2Config":
        missing = [k for k in ("authUrl", "tokenUrl", "redirectUrl", "clientId") if not data.get(k)]
        if missing:
            raise RecipeValidationError(f"oauth2 config is missing {', '.join(missing)}")
        return cls(
            auth_url=data["authUrl"],
            token_url=data["tokenUrl"],
            redirect_url=data["redirectUrl"],
            client_id=data["clientId"],
            scope=data.get("scope", ""),
            pkce_method=data.get("pkceMethod") or "S256",
            pkce_verifier_length=_int_field(data, "pkceVerifierLength", 64),
            identity_selector=data.get("identitySelector", DEFAULT_IDENTITY_SELECTOR),
            password_selector=data.get("passwordSelector", DEFAULT_PASSWORD_SELECTOR),
            submit_selector=data.get("submitSelector", DEFAULT_SUBMIT_SELECTOR),
            otp_selector=data.get("otpSelector", DEFAULT_OTP_SELECTOR),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "authUrl": self.auth_url,
            "tokenUrl": self.token_url,
            "redirectUrl": self.redirect_url,
            "clientId": self.client_id,
            "scope": self.scope,
            "pkceMethod": self.pkce_method,
            "pkceVerifierLength": self.pkce_verifier_length,
            "identitySelector": self.identity_selector,
            "passwordSelector": self.password_selector,
            "submitSelector": self.submit_selector,
            "otpSelector": self.otp_selector,
        }


@dataclass(frozen=True)
class Step:
    """One atomic action of a recipe.

    Only the fields relevant to `action` are set; the rest keep their defaults.
    """

    action: StepAction
    description: str = ""
    url: str = ""
    selector: str = ""
    selector_type: SelectorType = "Search"
    value: str = ""
    when_url: str = ""  # Skip the step unless the current page URL equals this

    # downloadAll
    sleep_duration_ms: int = 0

    # oauth2-setup
    oauth2: Oauth2Config | None = None

    # oauth2-post-and-get-items
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    extract_document_ids: str = ""
    extract_document_filenames: str = ""
    document_url: str = ""
    document_request_method: str = "GET"
    document_request_headers: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Check that the fields required by this step's action are present."""
        if self.action == StepAction.OPEN and not self.url:
            raise RecipeValidationError("open step requires a url")
        if self.action in _SELECTOR_ACTIONS and not self.selector:
            raise RecipeValidationError(f"{self.action.value} step requires a selector")
        if self.selector_type not in _SELECTOR_TYPES:
            raise RecipeValidationError(f"unknown selector type {self.selector_type!r}")
        if self.action == StepAction.SLEEP:
            try:
                int(self.value)
            except ValueError as e:
                raise RecipeValidationError(f"sleep step requires an integer value, got {self.value!r}") from e
        if self.action == StepAction.TRANSFORM and self.value != TRANSFORM_UNZIP:
            raise RecipeValidationError(f"unsupported transform {self.value!r}")
        if self.action == StepAction.MOVE:
            try:
                re.compile(self.value)
            except re.error as e:
                raise RecipeValidationError(f"move step has an invalid filename pattern: {e}") from e
        if self.action in (StepAction.RUN_SCRIPT, StepAction.RUN_SCRIPT_DOWNLOAD_URLS) and not self.value:
            raise RecipeValidationError(f"{self.action.value} step requires a script value")
        if self.action == StepAction.OAUTH2_SETUP and self.oauth2 is None:
            raise RecipeValidationError("oauth2-setup step requires an oauth2 config")
        if self.action == StepAction.OAUTH2_POST_AND_GET_ITEMS:
            if not self.url or not self.extract_document_ids or not self.document_url:
                raise RecipeValidationError("oauth2-post-and-get-items requires url, extractDocumentIds and documentUrl")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Step":
        """Create a step from its wire representation."""
        raw_action = data.get("action")
        try:
            action = StepAction(raw_action)
        except ValueError as e:
            raise RecipeValidationError(f"Unknown step action: {raw_action!r}") from e

        oauth2 = None
        if action == StepAction.OAUTH2_SETUP and data.get("oauth2"):
            oauth2 = Oauth2Config.from_dict(data["oauth2"])

        when = data.get("when") or {}

        step = cls(
            action=action,
            description=data.get("description", ""),
            url=data.get("url", ""),
            selector=data.get("selector", ""),
            selector_type=data.get("selectorType") or "Search",
            value=str(data.get("value", "")),
            when_url=when.get("url", "") if isinstance(when, dict) else "",
            sleep_duration_ms=_int_field(data, "sleepDuration", 0),
            oauth2=oauth2,
            body=data.get("body", ""),
            headers=dict(data.get("headers") or {}),
            extract_document_ids=data.get("extractDocumentIds", ""),
            extract_document_filenames=data.get("extractDocumentFilenames", ""),
            document_url=data.get("documentUrl", ""),
            document_request_method=(data.get("documentRequestMethod") or "GET").upper(),
            document_request_headers=dict(data.get("documentRequestHeaders") or {}),
        )
        step.validate()
        return step

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"action": self.action.value}
        if self.description:
            result["description"] = self.description
        if self.url:
            result["url"] = self.url
        if self.selector:
            result["selector"] = self.selector
        if self.selector_type != "Search":
            result["selectorType"] = self.selector_type
        if self.value:
            result["value"] = self.value
        if self.when_url:
            result["when"] = {"url": self.when_url}
        if self.sleep_duration_ms:
            result["sleepDuration"] = self.sleep_duration_ms
        if self.oauth2:
            result["oauth2"] = self.oauth2.to_dict()
        if self.action == StepAction.OAUTH2_POST_AND_GET_ITEMS:
            result.update(
                {
                    "body": self.body,
                    "headers": dict(self.headers),
                    "extractDocumentIds": self.extract_document_ids,
                    "extractDocumentFilenames": self.extract_document_filenames,
                    "documentUrl": self.document_url,
                    "documentRequestMethod": self.document_request_method,
                    "documentRequestHeaders": dict(self.document_request_headers),
                }
            )
        return result


@dataclass(frozen=True)
class Recipe:
    """Automation script for one supplier."""

    supplier: str
    version: str
    type: RecipeType
    steps: tuple[Step, ...]
    domains: tuple[str, ...] = ()

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def step_id(self, number: int, step: Step) -> str:
        """Stable identifier of a step, used in results and run history."""
        return f"{self.supplier}-{self.version}-{number}-{step.action.value}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipe":
        """Create recipe from dictionary.

        `provider` is accepted as an alias of `supplier`.
        """
        supplier = data.get("supplier") or data.get("provider")
        if not supplier or not str(supplier).strip():
            raise RecipeValidationError("Recipe is missing its supplier")

        raw_type = data.get("type", RecipeType.BROWSER.value)
        try:
            recipe_type = RecipeType(raw_type)
        except ValueError as e:
            raise RecipeValidationError(f"Recipe {supplier}: unknown type {raw_type!r}") from e

        raw_steps = data.get("steps") or []
        if not isinstance(raw_steps, list) or not raw_steps:
            raise RecipeValidationError(f"Recipe {supplier}: steps must be a non-empty list")

        steps = []
        for index, raw in enumerate(raw_steps, start=1):
            try:
                step = Step.from_dict(raw)
            except RecipeValidationError as e:
                raise RecipeValidationError(f"Recipe {supplier}, step {index}: {e}") from e
            allowed = BROWSER_ACTIONS if recipe_type == RecipeType.BROWSER else CLIENT_ACTIONS
            if step.action not in allowed:
                raise RecipeValidationError(f"Recipe {supplier}, step {index}: action {step.action.value!r} is not valid for {recipe_type.value} recipes")
            steps.append(step)

        return cls(
            supplier=str(supplier),
            version=str(data.get("version", "")),
            type=recipe_type,
            steps=tuple(steps),
            domains=tuple(data.get("domains") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "supplier": self.supplier,
            "domains": list(self.domains),
            "version": self.version,
            "type": self.type.value,
            "steps": [s.to_dict() for s in self.steps],
        }


# --- Execution results ---

StepStatus = Literal["success", "error"]


@dataclass(frozen=True)
class StepOutcome:
    """Disposition of one step.

    A fatal outcome aborts the recipe; a soft error is logged and the next
    step runs.
    """

    status: StepStatus
    message: str = ""
    fatal: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(cls, message: str = "") -> "StepOutcome":
        return cls("success", message)

    @classmethod
    def soft_error(cls, message: str) -> "StepOutcome":
        return cls("error", message, fatal=False)

    @classmethod
    def fatal_error(cls, message: str) -> "StepOutcome":
        return cls("error", message, fatal=True)


def format_new_documents(count: int) -> str:
    """Human summary of newly archived documents."""
    if count == 0:
        return "No new documents"
    if count == 1:
        return "One new document"
    return f"{count} new documents"


@dataclass
class RecipeResult:
    """Outcome of one recipe execution, consumed for reporting and run history."""

    status: StepStatus
    status_text: str
    last_step_id: str = ""
    last_step_description: str = ""
    last_error_message: str = ""
    new_files_count: int = 0
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "success"
