"""
Connected Account Registry

Stores per-team third-party credentials and their health status.

Tokens never leave the registry through list/read operations; callers get
ConnectedAccountView with a display-safe hint. Account status is written
only by ``verify``; the job pipeline reads accounts but never updates them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..common.errors import AuthError, NotFound
from ..common.schemas import (
    AccountStatus,
    ConnectedAccount,
    ConnectedAccountView,
    Provider,
    generate_id,
    token_hint,
    utc_now,
)
from ..common.store import Datastore
from .context import ACCOUNTS_WRITE, TeamContext

logger = logging.getLogger("triage.pipeline.accounts")

ACCOUNTS = "connected_accounts"


@dataclass
class VerifyResult:
    """Outcome of a credential check"""
    success: bool
    status: AccountStatus
    error: Optional[str] = None


class AccountRegistry:
    """
    Team credential registry.

    Args:
        store: Datastore
        testers: Provider -> object exposing
            ``async test_connection(account, http_client) -> bool``
        http_client: Shared client (default: a short-lived client per check)
    """

    def __init__(
        self,
        store: Datastore,
        testers: Dict[Provider, Any],
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self._store = store
        self._testers = testers
        self._http_client = http_client
        self._timeout = timeout

    def create(
        self,
        ctx: TeamContext,
        provider: Provider,
        label: str,
        token: str,
        *,
        provider_account_id: str = "",
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        provider_metadata: Optional[Dict[str, Any]] = None,
    ) -> ConnectedAccountView:
        """Store a credential from manual entry or an OAuth callback"""
        ctx.require(ACCOUNTS_WRITE)
        if not token:
            raise ValueError("token is required")

        account = ConnectedAccount(
            id=generate_id("acct"),
            team_id=ctx.team_id,
            provider=Provider(provider),
            label=label,
            provider_account_id=provider_account_id,
            access_token=token,
            access_token_hint=token_hint(token),
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            scopes=scopes or [],
            provider_metadata=provider_metadata or {},
            status=AccountStatus.CONNECTED,
        )
        self._store.insert(ACCOUNTS, account.model_dump(mode="json"))
        logger.info("Connected %s account %s for team %s", account.provider.value, account.id, ctx.team_id)
        return account.redacted()

    def get(self, ctx: TeamContext, account_id: str) -> Optional[ConnectedAccountView]:
        account = self.get_credentials(ctx.team_id, account_id)
        return account.redacted() if account else None

    def list(self, ctx: TeamContext) -> List[ConnectedAccountView]:
        return [
            ConnectedAccount.model_validate(r).redacted()
            for r in self._store.find(ACCOUNTS, team_id=ctx.team_id)
        ]

    def get_credentials(self, team_id: str, account_id: str) -> Optional[ConnectedAccount]:
        """Full credential for pipeline use. Never return this to a client."""
        record = self._store.get(ACCOUNTS, account_id, team_id=team_id)
        return ConnectedAccount.model_validate(record) if record else None

    def delete(self, ctx: TeamContext, account_id: str) -> bool:
        ctx.require(ACCOUNTS_WRITE)
        deleted = self._store.delete(ACCOUNTS, account_id, team_id=ctx.team_id)
        if deleted:
            logger.info("Deleted account %s for team %s", account_id, ctx.team_id)
        return deleted

    async def verify(self, ctx: TeamContext, account_id: str) -> VerifyResult:
        """
        Re-test a stored credential and record its health.

        An explicit auth rejection marks the account ``revoked``; any other
        failure marks it ``error``. The record is never deleted.

        Raises:
            NotFound: no such account for this team
        """
        account = self.get_credentials(ctx.team_id, account_id)
        if account is None:
            raise NotFound(f"account {account_id}")

        tester = self._testers.get(account.provider)
        if tester is None:
            result = VerifyResult(False, AccountStatus.ERROR, f"no connection test for {account.provider.value}")
        else:
            result = await self._run_test(tester, account)

        self._store.update(
            ACCOUNTS,
            account.id,
            {"status": result.status.value, "last_verified_at": utc_now()},
            team_id=ctx.team_id,
        )
        if result.success:
            logger.info("Account %s verified", account.id)
        else:
            logger.warning("Account %s verification failed: %s", account.id, result.error)
        return result

    async def _run_test(self, tester: Any, account: ConnectedAccount) -> VerifyResult:
        try:
            if self._http_client is not None:
                ok = await tester.test_connection(account, self._http_client)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
                    ok = await tester.test_connection(account, client)
        except AuthError as e:
            return VerifyResult(False, AccountStatus.REVOKED, str(e))
        except Exception as e:
            return VerifyResult(False, AccountStatus.ERROR, str(e))

        if ok:
            return VerifyResult(True, AccountStatus.CONNECTED)
        return VerifyResult(False, AccountStatus.ERROR, "connection test returned false")
