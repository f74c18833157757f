"""
Checkout error taxonomy.

Every error carries a message safe to show to the buyer (pt-BR, the
storefront's language) and the HTTP status the API answers with. The
internal message goes to the logs.
"""
from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base exception for checkout and reconciliation errors."""

    http_status = 500
    default_user_message = "Erro interno do servidor"

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the API error body."""
        return {"success": False, "error": self.user_message}


class CheckoutValidationError(CheckoutError):
    """Client input rejected before any purchase row is written."""

    http_status = 400

    def __init__(self, user_message: str, **context: Any):
        super().__init__(user_message, user_message=user_message, **context)


class BuyerNotIdentifiedError(CheckoutError):
    """No authenticated buyer id reached the engine."""

    http_status = 401
    default_user_message = "Usuário não encontrado. Por favor, faça login."


class PaymentConfigurationError(CheckoutError):
    """The payment provider credentials are missing."""

    http_status = 500
    default_user_message = "Sistema de pagamento não configurado. Entre em contato com o suporte."


class GatewayRejectedError(CheckoutError):
    """
    The gateway refused to open the charge.

    Raised only after the pending batch has been deleted.
    """

    http_status = 400
    default_user_message = "Não foi possível processar o pagamento. Tente novamente."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        reason_code: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, user_message=user_message, **context)
        self.reason_code = reason_code


class GatewayUnavailableError(CheckoutError):
    """
    The gateway could not be reached or its answer is unknown.

    Retryable. Pending rows are kept because the charge may exist.
    """

    http_status = 503
    default_user_message = (
        "O serviço de pagamento está instável no momento. Aguarde alguns segundos e tente novamente."
    )

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retryable"] = True
        return body
