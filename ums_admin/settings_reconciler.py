"""Load, diff and save the server's user settings.

The reconciler keeps two copies of the settings: ``configuration`` is the
last state the server confirmed, ``draft`` is what the user is editing.
Only the keys that differ between the two are ever sent back.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import logging
from typing import Any, Callable, Dict, Mapping

import aiohttp

from .credentials import TokenProvider, auth_headers
from .defaults import DEFAULT_SETTINGS, SELECTION_KEYS
from .notifications import LoggingNotifier, Notice, Notifier, Severity, message_text

log = logging.getLogger("ums_admin.settings")

_MISSING = object()

_PAYLOAD_SETTINGS_KEY = "userSettings"
_PAYLOAD_DEFAULTS_KEY = "userSettingsDefaults"


class SaveOutcome(enum.Enum):
    NO_CHANGES = "no_changes"
    SAVED = "saved"
    FAILED = "failed"


def merge_settings(defaults: Mapping[str, Any], payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Return ``payload`` laid over a copy of ``defaults``.

    Every key present in ``payload`` takes the payload value whole, nested
    mappings and lists included; keys only in ``defaults`` keep the default.
    Neither input is mutated.
    """
    out = copy.deepcopy(dict(defaults))
    for key, value in payload.items():
        out[key] = copy.deepcopy(value)
    return out


def values_equal(left: Any, right: Any) -> bool:
    """Structural equality for JSON-like values.

    Lists compare element by element and mappings key by key. Booleans
    only equal booleans, so ``True`` and ``1`` count as different values.
    """
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if left.keys() != right.keys():
            return False
        return all(values_equal(left[key], right[key]) for key in left)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right))
    return left == right


def compute_change_set(configuration: Mapping[str, Any], draft: Mapping[str, Any]) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    for key, value in draft.items():
        if not values_equal(configuration.get(key, _MISSING), value):
            changes[key] = copy.deepcopy(value)
    return changes


class ConfigReconciler:
    """Owns the confirmed server settings and the editable draft."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        base_url: str,
        defaults: Mapping[str, Any] | None = None,
        notifier: Notifier | None = None,
        token_provider: TokenProvider | None = None,
        settings_path: str = "/v1/api/settings/",
        request_timeout: float = 10.0,
        i18n: Mapping[str, str] | None = None,
        on_report: Callable[[], None] | None = None,
    ) -> None:
        self._session = session
        self._url = base_url.rstrip("/") + "/" + settings_path.lstrip("/")
        self._template: Dict[str, Any] = copy.deepcopy(
            dict(DEFAULT_SETTINGS if defaults is None else defaults)
        )
        self._notifier = notifier or LoggingNotifier()
        self._token_provider = token_provider
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._i18n = i18n
        self._on_report = on_report
        self._disposed = False

        self.configuration: Dict[str, Any] = copy.deepcopy(self._template)
        self.draft: Dict[str, Any] = copy.deepcopy(self._template)
        self.selection_settings: Dict[str, Any] = {}
        self.loading = False
        self.loaded = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def init(self) -> Dict[str, Any]:
        return await self.load()

    def dispose(self) -> None:
        self._disposed = True

    async def load(self) -> Dict[str, Any]:
        self.loading = True
        try:
            payload = await self._fetch()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            if self._disposed:
                return self.configuration
            log.warning("Unable to load settings from %s: %s", self._url, exc)
            self.configuration = copy.deepcopy(self._template)
            self.draft = copy.deepcopy(self._template)
            self.selection_settings = {}
            self.loaded = False
            self._notify(
                "Error",
                self._with_report_hint("ConfigurationNotReceived"),
                Severity.ERROR,
                notice_id="data-loading",
                auto_close=3000,
            )
            return self.configuration
        finally:
            self.loading = False

        if self._disposed:
            return self.configuration

        configuration, selection = self._split_payload(payload)
        self.configuration = configuration
        self.draft = copy.deepcopy(configuration)
        self.selection_settings = selection
        self.loaded = True
        log.debug("Loaded %d settings (%d option lists)", len(configuration), len(selection))
        return self.configuration

    async def _fetch(self) -> Dict[str, Any]:
        async with self._session.get(
            self._url,
            headers=auth_headers(self._token_provider),
            timeout=self._timeout,
        ) as response:
            response.raise_for_status()
            payload = await response.json(content_type=None)
        if not isinstance(payload, dict):
            raise ValueError("settings response is not a JSON object")
        return payload

    def _split_payload(self, payload: Mapping[str, Any]) -> tuple[Dict[str, Any], Dict[str, Any]]:
        base: Mapping[str, Any] = self._template
        server_defaults = payload.get(_PAYLOAD_DEFAULTS_KEY)
        if isinstance(server_defaults, Mapping):
            base = merge_settings(base, server_defaults)

        user_settings = payload.get(_PAYLOAD_SETTINGS_KEY)
        if isinstance(user_settings, Mapping):
            settings = user_settings
            selection = {
                key: value
                for key, value in payload.items()
                if key not in (_PAYLOAD_SETTINGS_KEY, _PAYLOAD_DEFAULTS_KEY)
            }
        else:
            # bare settings map, possibly with option lists alongside
            settings = {
                key: value
                for key, value in payload.items()
                if key not in SELECTION_KEYS and key != _PAYLOAD_DEFAULTS_KEY
            }
            selection = {key: value for key, value in payload.items() if key in SELECTION_KEYS}

        return merge_settings(base, settings), copy.deepcopy(selection)

    def set_value(self, key: str, value: Any) -> None:
        if key not in self.draft:
            raise KeyError(f"unknown setting {key!r}")
        self.draft[key] = copy.deepcopy(value)

    def update_draft(self, values: Mapping[str, Any]) -> None:
        unknown = sorted(key for key in values if key not in self.draft)
        if unknown:
            raise KeyError(f"unknown settings: {', '.join(unknown)}")
        for key, value in values.items():
            self.draft[key] = copy.deepcopy(value)

    def reset_draft(self) -> None:
        self.draft = copy.deepcopy(self.configuration)

    def change_set(self) -> Dict[str, Any]:
        return compute_change_set(self.configuration, self.draft)

    async def save(self, draft: Mapping[str, Any] | None = None) -> SaveOutcome:
        if draft is not None:
            self._check_key_set(draft)
            self.draft = copy.deepcopy(dict(draft))

        submitted = copy.deepcopy(self.draft)
        changes = compute_change_set(self.configuration, submitted)
        if not changes:
            self._notify("Saved", message_text(self._i18n, "ConfigurationHasNoChanges"), Severity.INFO)
            return SaveOutcome.NO_CHANGES

        self.loading = True
        try:
            async with self._session.post(
                self._url,
                json=changes,
                headers=auth_headers(self._token_provider),
                timeout=self._timeout,
            ) as response:
                response.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if self._disposed:
                return SaveOutcome.FAILED
            log.warning("Unable to save %d setting(s) to %s: %s", len(changes), self._url, exc)
            self._notify(
                "Error",
                self._with_report_hint("ConfigurationNotSaved"),
                Severity.ERROR,
            )
            return SaveOutcome.FAILED
        finally:
            self.loading = False

        if self._disposed:
            return SaveOutcome.SAVED

        self.configuration = submitted
        log.info("Saved settings: %s", ", ".join(sorted(changes)))
        self._notify("Saved", message_text(self._i18n, "ConfigurationSaved"), Severity.SUCCESS)
        return SaveOutcome.SAVED

    def apply_remote_update(self, values: Mapping[str, Any]) -> None:
        """Fold settings changed elsewhere into both copies.

        Keys in ``values`` overwrite the draft too; other pending edits in
        the draft are kept.
        """
        if self._disposed or not values:
            return
        self.configuration = merge_settings(self.configuration, values)
        self.draft = merge_settings(self.draft, values)
        log.debug("Applied pushed settings: %s", ", ".join(sorted(values)))

    def _check_key_set(self, draft: Mapping[str, Any]) -> None:
        missing = sorted(set(self.configuration) - set(draft))
        extra = sorted(set(draft) - set(self.configuration))
        if missing or extra:
            raise KeyError(f"draft keys do not match settings (missing={missing}, unknown={extra})")

    def _with_report_hint(self, key: str) -> str:
        text = message_text(self._i18n, key)
        if self._on_report is None:
            return text
        return f"{text} {message_text(self._i18n, 'ClickHereReportBug')}"

    def _notify(
        self,
        title_key: str,
        message: str,
        severity: Severity,
        *,
        notice_id: str | None = None,
        auto_close: bool | int = True,
    ) -> None:
        on_click = self._on_report if severity is Severity.ERROR else None
        self._notifier.notify(
            Notice(
                title=message_text(self._i18n, title_key),
                message=message,
                severity=severity,
                on_click=on_click,
                id=notice_id,
                auto_close=auto_close,
            )
        )
