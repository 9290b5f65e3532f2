"""Account connection management and stack listing refresh."""

import logging

from driftwatch.aws.client import CloudFormationGateway, GatewayFactory
from driftwatch.aws.credentials import CredentialBroker, validate_grant_syntax
from driftwatch.config import Settings
from driftwatch.errors import AccountDisconnected, IdentityMismatch
from driftwatch.models import Grant, StackRecord
from driftwatch.store.job_store import JobStore

logger = logging.getLogger(__name__)


class AccountService:
    """Creates, updates and revokes credential grants for an owner."""

    def __init__(
        self,
        store: JobStore,
        broker: CredentialBroker,
        settings: Settings,
        gateway_factory: GatewayFactory = CloudFormationGateway,
    ):
        self._store = store
        self._broker = broker
        self._settings = settings
        self._gateway_factory = gateway_factory

    def connect_account(
        self,
        owner_id: str,
        role_arn: str,
        external_id: str,
        region: str | None = None,
        name: str | None = None,
    ) -> Grant:
        """Verify the role can be assumed, then record the grant.

        The account id is taken from the verified identity, never from input.
        """
        arn_account = validate_grant_syntax(role_arn, external_id)
        credentials = self._broker.acquire(role_arn, external_id)
        if credentials.account_id != arn_account:
            raise IdentityMismatch(
                f"Role ARN names account {arn_account} but credentials are for "
                f"{credentials.account_id}"
            )

        grant = self._store.create_grant(
            owner_id=owner_id,
            account_id=credentials.account_id,
            role_arn=role_arn,
            external_id=external_id,
            region=region or self._settings.default_region,
            name=name,
        )
        logger.info("Connected account %s for owner %s", grant.account_id, owner_id)
        return grant

    def list_accounts(self, owner_id: str) -> list[Grant]:
        return self._store.list_grants(owner_id)

    def update_account(
        self,
        owner_id: str,
        account_id: str,
        name: str | None = None,
        region: str | None = None,
    ) -> Grant:
        return self._store.update_grant(owner_id, account_id, name=name, region=region)

    def disconnect_account(self, owner_id: str, account_id: str) -> None:
        """Revoke a grant. Outstanding jobs fail on the next tick."""
        self._store.delete_grant(owner_id, account_id)
        logger.info("Disconnected account %s for owner %s", account_id, owner_id)

    def refresh_stacks(self, owner_id: str, account_id: str) -> list[StackRecord]:
        """List the account's stacks remotely and upsert every stack record."""
        grant = self._store.get_grant(owner_id, account_id)
        if grant is None:
            raise AccountDisconnected(f"No connected account {account_id} for this owner")

        credentials = self._broker.acquire(grant.role_arn, grant.external_id)
        gateway = self._gateway_factory(
            credentials, grant.region, timeout=self._settings.remote_timeout_seconds
        )
        descriptors = gateway.list_stacks()
        records = [self._store.upsert_stack(grant, grant.region, d) for d in descriptors]
        logger.info(
            "Refreshed %d stacks for account %s in %s", len(records), account_id, grant.region
        )
        return records
