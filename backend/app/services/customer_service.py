"""Resolve Stripe customers to local users"""
import logging
from typing import Any, Optional

from app.db.stores import UserStore
from app.services.stripe_service import PaymentProvider, _get_stripe_value, _metadata

logger = logging.getLogger(__name__)


class CustomerResolver:
    """Maps a Stripe customer id to a local user id.

    Checks the customer's metadata.userId first, then falls back to a user
    stored with that stripe_customer_id.
    """

    def __init__(self, provider: PaymentProvider, users: UserStore):
        self.provider = provider
        self.users = users

    def resolve_user_id(self, customer_id: Optional[str], stripe_account: Optional[str] = None) -> Optional[str]:
        if not customer_id:
            return None

        try:
            customer = self.provider.retrieve_customer(customer_id, stripe_account=stripe_account)
            user_id = _metadata(customer).get('userId')
            if user_id:
                return str(user_id)
        except Exception as e:
            # Fall through to the local lookup
            logger.warning(f"Could not retrieve customer {customer_id} from Stripe: {e}")

        try:
            users = self.users.find_by_stripe_customer_id(customer_id)
        except Exception as e:
            logger.error(f"Failed to resolve user from customer {customer_id}: {e}")
            return None
        if users:
            if len(users) > 1:
                logger.warning(f"{len(users)} users share customer {customer_id}; using {users[0].id}")
            return users[0].id
        return None

    def customer_email(self, customer_id: Optional[str], stripe_account: Optional[str] = None) -> Optional[str]:
        """Email on the Stripe customer record, if any."""
        if not customer_id:
            return None
        try:
            customer: Any = self.provider.retrieve_customer(customer_id, stripe_account=stripe_account)
        except Exception as e:
            logger.error(f"Failed to fetch Stripe customer email for {customer_id}: {e}")
            return None
        email = _get_stripe_value(customer, 'email')
        return email if isinstance(email, str) and email else None
