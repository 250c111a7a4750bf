"""
MoMo Billing - Payment Gateway Client

Contract for the external mobile money gateway plus the Paystack adapter.

Gateway calls carry a bounded timeout and are never retried here. Failures
surface as GatewayTimeout / GatewayUnavailable so callers can leave local
state untouched and let the gateway (or the client) retry.

Paystack API docs: https://paystack.com/docs/payments/payment-channels/#mobile-money
"""

import hashlib
import hmac
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from momo_billing.config import settings
from momo_billing.models.momo import MoMoNetwork
from momo_billing.utils.error_handling import (
    GatewayTimeout,
    GatewayUnavailable,
    InvalidPhoneOrNetwork,
    MandateCancellationFailed,
    ReferenceNotFound,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ChargeInitiation:
    """Gateway charge that the payer still has to approve on their phone."""
    reference: str
    redirect_or_prompt_target: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "redirect_or_prompt_target": self.redirect_or_prompt_target,
        }


@dataclass
class VerificationResult:
    """Gateway verdict for a reference."""
    verified: bool
    amount_confirmed: Optional[Decimal] = None
    gateway_response_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_response: Dict[str, Any] = field(default_factory=dict)
    is_final: bool = True


# Paystack transaction statuses that may still settle either way
NON_FINAL_STATUSES = {"pending", "ongoing", "processing", "queued", "send_otp", "pay_offline"}

# Paystack mobile_money.provider codes
PROVIDER_CODES = {
    MoMoNetwork.MTN: "mtn",
    MoMoNetwork.VODAFONE: "vod",
    MoMoNetwork.AIRTELTIGO: "atl",
}


def to_minor_units(amount: Decimal) -> int:
    """Convert cedis to pesewas (100 pesewas = 1 cedi)."""
    return int((Decimal(str(amount)) * 100).to_integral_value())


def from_minor_units(amount: Any) -> Optional[Decimal]:
    if amount is None:
        return None
    return (Decimal(str(amount)) / 100).quantize(Decimal("0.01"))


def generate_payment_reference(subscription_id: uuid.UUID, renewal: bool = False) -> str:
    """
    Generate a unique gateway reference.
    
    Format: momo_{first|renewal}_{SUBSCRIPTION_HEX}_{MILLIS}{RANDOM}
    """
    kind = "renewal" if renewal else "first"
    millis = int(time.time() * 1000)
    return f"momo_{kind}_{subscription_id.hex}_{millis}{uuid.uuid4().hex[:6]}"


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify a Paystack webhook signature.
    
    Paystack signs the raw request body with HMAC SHA512.
    """
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)


def _parse_metadata(raw: Any) -> Dict[str, Any]:
    # Paystack echoes metadata either as an object or as a JSON string
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str) and raw:
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


# =============================================================================
# GATEWAY CONTRACT
# =============================================================================

class GatewayClient(ABC):
    """Abstract mobile money gateway."""
    
    @abstractmethod
    async def initiate_charge(self, subscription, renewal: bool = False) -> ChargeInitiation:
        """Start a charge against the subscription's wallet."""
        pass
    
    @abstractmethod
    async def verify(self, reference: str) -> VerificationResult:
        """Ask the gateway for the outcome of a reference. Safe to repeat."""
        pass
    
    @abstractmethod
    async def cancel_recurring_mandate(self, subscription) -> bool:
        """Disable any standing authorization. Best-effort."""
        pass


# =============================================================================
# PAYSTACK MOBILE MONEY ADAPTER
# =============================================================================

class PaystackMoMoGateway(GatewayClient):
    """
    Paystack mobile money gateway for Ghana Cedi charges.
    
    Runs in stub mode when no secret key is configured so local development
    works without credentials.
    """
    
    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        currency: Optional[str] = None,
        callback_url: Optional[str] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.base_url = (base_url or settings.paystack_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.paystack_timeout_seconds
        self.currency = currency or settings.momo_currency
        self.callback_url = callback_url or settings.momo_callback_target
        
        if not self.secret_key:
            logger.warning("PaystackMoMoGateway initialized without secret key - using stub mode")
            self._is_stub = True
        else:
            self._is_stub = False
            logger.info(f"PaystackMoMoGateway initialized (live={self.secret_key.startswith('sk_live_')})")
    
    def _get_headers(self) -> Dict[str, str]:
        """Get headers for Paystack API requests."""
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
    
    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Make an HTTP request to the Paystack API.
        
        Raises:
            GatewayTimeout: No answer within the configured timeout
            GatewayUnavailable: Transport failure or 5xx response
        """
        url = f"{self.base_url}{endpoint}"
        
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    json=data,
                )
        except httpx.TimeoutException as e:
            logger.error(f"Paystack API timeout: {method} {endpoint}")
            raise GatewayTimeout(original_error=e)
        except httpx.RequestError as e:
            logger.error(f"Paystack API request error: {method} {endpoint}: {e}")
            raise GatewayUnavailable(original_error=e)
        
        logger.debug(f"Paystack {method} {endpoint}: status={response.status_code}")
        
        if response.status_code >= 500:
            logger.error(f"Paystack API server error: {method} {endpoint}: status={response.status_code}")
            raise GatewayUnavailable(f"Payment gateway returned HTTP {response.status_code}")
        
        return response
    
    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise GatewayUnavailable("Payment gateway returned a malformed response")
        return body if isinstance(body, dict) else {}
    
    async def initiate_charge(self, subscription, renewal: bool = False) -> ChargeInitiation:
        """
        Charge the subscription's mobile money wallet.
        
        API: POST https://api.paystack.co/charge
        """
        reference = generate_payment_reference(subscription.id, renewal=renewal)
        network = MoMoNetwork(subscription.network)
        
        if self._is_stub:
            logger.warning("PaystackMoMoGateway in STUB mode - returning fake charge")
            return ChargeInitiation(
                reference=reference,
                redirect_or_prompt_target="Approve the payment prompt on your phone (STUB MODE)",
                raw_response={"status": True, "data": {"reference": reference, "status": "send_otp"}},
            )
        
        payload = {
            "email": subscription.email,
            "amount": to_minor_units(subscription.amount),
            "currency": subscription.currency or self.currency,
            "reference": reference,
            "callback_url": self.callback_url,
            "mobile_money": {
                "phone": subscription.phone,
                "provider": PROVIDER_CODES[network],
            },
            "metadata": {
                "subscription_id": str(subscription.id),
                "user_id": subscription.user_id,
                "tier": subscription.tier,
                "billing_period": subscription.billing_period.value,
                "phone": subscription.phone,
                "network": network.value,
                "recurring": True,
                "renewal": renewal,
            },
        }
        
        logger.info(
            f"Initiating MoMo charge: ref={reference}, subscription={subscription.id}, "
            f"amount={subscription.currency} {subscription.amount}, network={network.value}"
        )
        
        response = await self._make_request("POST", "/charge", data=payload)
        result = self._json(response)
        
        if response.status_code >= 400 or not result.get("status"):
            message = result.get("message") or f"HTTP {response.status_code}"
            logger.error(f"MoMo charge rejected: ref={reference}: {message}")
            if response.status_code in (400, 422):
                raise InvalidPhoneOrNetwork(subscription.phone, message=f"Mobile money charge rejected: {message}")
            raise GatewayUnavailable(f"Payment gateway rejected the charge: {message}")
        
        data = result.get("data") or {}
        target = data.get("display_text") or data.get("url") or data.get("authorization_url")
        
        return ChargeInitiation(
            reference=data.get("reference") or reference,
            redirect_or_prompt_target=target,
            raw_response=result,
        )
    
    async def verify(self, reference: str) -> VerificationResult:
        """
        Verify a transaction reference.
        
        API: GET https://api.paystack.co/transaction/verify/:reference
        """
        if self._is_stub:
            logger.warning("PaystackMoMoGateway in STUB mode - returning fake verification")
            return VerificationResult(
                verified=True,
                amount_confirmed=None,
                gateway_response_code="success",
                metadata={"stub": True},
            )
        
        logger.info(f"Verifying MoMo payment: {reference}")
        
        response = await self._make_request("GET", f"/transaction/verify/{reference}")
        result = self._json(response)
        message = str(result.get("message") or "")
        
        if response.status_code == 404 or (
            response.status_code == 400 and "not found" in message.lower()
        ):
            raise ReferenceNotFound(reference)
        
        if response.status_code >= 400 or not result.get("status"):
            logger.warning(f"Verification rejected: ref={reference}: {message}")
            return VerificationResult(
                verified=False,
                gateway_response_code=f"http_{response.status_code}",
                raw_response=result,
            )
        
        data = result.get("data") or {}
        tx_status = str(data.get("status") or "").lower()
        metadata = _parse_metadata(data.get("metadata"))
        metadata.update({
            "transaction_id": data.get("id"),
            "gateway_response": data.get("gateway_response"),
            "channel": data.get("channel"),
            "paid_at": data.get("paid_at"),
        })
        authorization = data.get("authorization") or {}
        if authorization.get("authorization_code"):
            metadata["authorization_code"] = authorization["authorization_code"]
        
        verified = tx_status == "success"
        logger.info(f"Payment verification result: ref={reference}, status={tx_status}, verified={verified}")
        
        return VerificationResult(
            verified=verified,
            amount_confirmed=from_minor_units(data.get("amount")),
            gateway_response_code=tx_status or None,
            metadata=metadata,
            raw_response=result,
            is_final=tx_status not in NON_FINAL_STATUSES,
        )
    
    async def cancel_recurring_mandate(self, subscription) -> bool:
        """
        Disable the gateway subscription backing this mandate.
        
        API: POST https://api.paystack.co/subscription/disable
        """
        if not subscription.mandate_code:
            return True
        
        if self._is_stub:
            return True
        
        payload = {
            "code": subscription.mandate_code,
            "token": subscription.mandate_token,
        }
        
        logger.info(f"Cancelling Paystack mandate: {subscription.mandate_code}")
        
        response = await self._make_request("POST", "/subscription/disable", data=payload)
        result = self._json(response)
        
        if response.status_code >= 400 or not result.get("status"):
            raise MandateCancellationFailed(
                f"Could not cancel recurring mandate: {result.get('message') or response.status_code}"
            )
        return True


def get_gateway() -> GatewayClient:
    """Dependency returning the configured gateway client."""
    return PaystackMoMoGateway()
