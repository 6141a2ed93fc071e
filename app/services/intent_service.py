"""
Payment intent builder.

Turns (debt, ower, source chain, token) into the exact arguments for the
splitter contract's payRecipient call. Pure computation: no I/O, no keys,
nothing is submitted.
"""

from decimal import Decimal
from typing import Optional

from app.core.chains import ChainRegistry, TokenType
from app.core.exceptions import DebtAlreadySettled, InvalidIntent, OwerNotFound
from app.models.base import is_valid_id, new_id
from app.models.debt import Debt, DebtStatus, Identity, Ower
from app.schemas.settlement import PaymentIntent
from app.utils.amounts import to_base_units

# Fields that must match between a prepared intent and a re-derived one
_BINDING_FIELDS = (
    "debt_id",
    "source_chain",
    "destination_chain",
    "contract_address",
    "token_address",
    "amount_base_units",
    "destination_chain_selector",
    "token_type_code",
    "same_chain",
)


class PaymentIntentBuilder:
    def __init__(self, registry: ChainRegistry):
        self.registry = registry

    def build_intent(
        self,
        debt: Debt,
        ower_identity: Identity,
        source_chain: str,
        token_type: TokenType
    ) -> PaymentIntent:
        """
        Build the intent for one ower's share of a debt.

        Raises DebtAlreadySettled, OwerNotFound, UnsupportedChain or
        UnsupportedToken.
        """
        if debt.status != DebtStatus.PENDING:
            raise DebtAlreadySettled(f"Debt {debt.id} is already settled", debt_id=debt.id)

        ower = debt.find_ower(ower_identity)
        if ower is None:
            raise OwerNotFound(
                f"{ower_identity.wallet_address} does not owe on debt {debt.id}",
                debt_id=debt.id
            )
        if debt.is_ower_settled(ower_identity):
            raise DebtAlreadySettled(
                f"Share of {ower_identity.wallet_address} on debt {debt.id} is already settled",
                debt_id=debt.id
            )

        return self._intent(debt.id, ower, debt.payer, source_chain, token_type)

    def build_direct_intent(
        self,
        payer: Identity,
        ower_identity: Identity,
        amount: Decimal,
        source_chain: str,
        token_type: TokenType,
        debt_id: Optional[str] = None
    ) -> PaymentIntent:
        """Intent for an ad hoc payment; the debt id is generated if absent."""
        if debt_id is not None and not is_valid_id(debt_id):
            raise InvalidIntent(f"Invalid debt id: {debt_id}")
        if payer.matches(ower_identity):
            raise InvalidIntent("Payer and ower must be different parties")
        ower = Ower(identity=ower_identity, amount=amount)
        return self._intent(debt_id or new_id(), ower, payer, source_chain, token_type)

    def verify_intent(self, debt: Debt, intent: PaymentIntent) -> PaymentIntent:
        """
        Re-derive an intent from recorded state and check the caller's copy.

        Raises InvalidIntent when any binding field differs, so a tampered
        or stale intent can never be recorded against a debt.
        """
        expected = self.build_intent(debt, intent.ower, intent.source_chain, intent.token_type_code)
        for name in _BINDING_FIELDS:
            if getattr(expected, name) != getattr(intent, name):
                raise InvalidIntent(
                    f"Intent field '{name}' does not match debt {debt.id}",
                    debt_id=debt.id,
                    field=name
                )
        if not expected.recipient.matches(intent.recipient):
            raise InvalidIntent(
                f"Intent recipient does not match payer of debt {debt.id}",
                debt_id=debt.id,
                field="recipient"
            )
        return intent

    def _intent(
        self,
        debt_id: str,
        ower: Ower,
        recipient: Identity,
        source_chain: str,
        token_type: TokenType
    ) -> PaymentIntent:
        source = self.registry.lookup(source_chain)
        destination = self.registry.settlement_chain
        token = source.token(token_type)
        # the bridged token must exist on the settlement side too
        destination.token(token_type)

        return PaymentIntent(
            intent_id=new_id(),
            debt_id=debt_id,
            ower=ower.identity,
            recipient=recipient,
            source_chain=source.chain_id,
            destination_chain=destination.chain_id,
            contract_address=source.contract_address,
            token_address=token.address,
            amount_base_units=to_base_units(ower.amount, token.decimals),
            destination_chain_selector=destination.bridge_selector,
            token_type_code=token.token_type,
            same_chain=source.chain_id == destination.chain_id
        )
