"""Delegated SMS/SMTP configuration: account, then manager, then system defaults."""

from __future__ import annotations

import logging
from collections import ChainMap
from typing import Mapping

from .account import Account
from .contracts import AccountStore, DefaultPropertiesProvider, StoreError

logger = logging.getLogger(__name__)

SMS = "sms"
SMTP = "smtp"
PROPERTY_KINDS = (SMS, SMTP)


def _own_properties(account: Account, kind: str) -> dict[str, str]:
    props = account.sms_properties if kind == SMS else account.smtp_properties
    if not props:
        return {}
    return {key: value for key, value in props.items() if value is not None and str(value).strip()}


class DelegatedPropertiesResolver:
    """Resolve configuration blobs through a lazily built delegate chain.

    The chain is a ``ChainMap`` so a lookup returns the first tier that
    defines the key: the account's own properties, then (for a managed
    account) the first manager's resolved chain, otherwise the system
    defaults. Chains are cached on the account instance.
    """

    def __init__(
        self,
        store: AccountStore,
        defaults: DefaultPropertiesProvider,
        *,
        hop_limit: int = 8,
    ) -> None:
        self._store = store
        self._defaults = defaults
        self._hop_limit = max(1, hop_limit)

    def sms_properties(self, account: Account) -> ChainMap:
        return self.resolve(account, SMS)

    def smtp_properties(self, account: Account) -> ChainMap:
        return self.resolve(account, SMTP)

    def resolve(self, account: Account, kind: str) -> ChainMap:
        if kind not in PROPERTY_KINDS:
            raise ValueError(f"unknown property kind: {kind}")
        return self._resolve(account, kind, frozenset())

    def _resolve(self, account: Account, kind: str, visited: frozenset[str]) -> ChainMap:
        cached = account.resolved_properties.get(kind)
        if cached is not None:
            return cached

        own = _own_properties(account, kind)
        delegate = self._manager_chain(account, kind, visited)
        if delegate is None:
            chain = ChainMap(own, self._system_defaults(kind))
        else:
            chain = delegate.new_child(own)
        account.resolved_properties[kind] = chain
        return chain

    def _manager_chain(self, account: Account, kind: str, visited: frozenset[str]) -> ChainMap | None:
        if not account.is_managed:
            return None
        if account.account_id in visited or len(visited) >= self._hop_limit:
            logger.warning("manager delegation stopped at account %s", account.account_id)
            return None
        try:
            managers = self._store.find_managers(account.manager_id)
        except StoreError as exc:
            logger.error("unable to resolve manager %s for account %s: %s", account.manager_id, account.account_id, exc)
            return None
        if not managers:
            return None
        # first match wins when several managers share an id
        manager = managers[0]
        return self._resolve(manager, kind, visited | {account.account_id})

    def _system_defaults(self, kind: str) -> Mapping[str, str]:
        return dict(self._defaults.default_properties(kind))


class SettingsPropertiesProvider:
    """Serve system-level defaults from the process settings."""

    def __init__(self, sms: Mapping[str, str], smtp: Mapping[str, str]) -> None:
        self._defaults = {SMS: dict(sms), SMTP: dict(smtp)}

    def default_properties(self, kind: str) -> Mapping[str, str]:
        return self._defaults.get(kind, {})
