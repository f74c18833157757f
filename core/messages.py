"""Buyer-facing messages for gateway outcomes and refusals (pt-BR)."""
from typing import Dict, Optional, Sequence

_STATUS_MESSAGES: Dict[str, Dict[str, str]] = {
    "approved": {
        "accredited": "Pagamento aprovado com sucesso!",
    },
    "pending": {
        "pending_contingency": "Pagamento em processamento. Você receberá um email quando for aprovado.",
        "pending_review_manual": "Pagamento em análise. Você receberá um email quando for aprovado.",
        "pending_waiting_transfer": "Aguardando o pagamento do PIX.",
    },
    "in_process": {
        "pending_contingency": "Pagamento em processamento. Você receberá um email quando for aprovado.",
        "pending_review_manual": "Pagamento em análise. Você receberá um email quando for aprovado.",
    },
    "rejected": {
        "cc_rejected_bad_filled_card_number": "Número do cartão incorreto.",
        "cc_rejected_bad_filled_date": "Data de validade incorreta.",
        "cc_rejected_bad_filled_other": "Dados do cartão incorretos.",
        "cc_rejected_bad_filled_security_code": "Código de segurança incorreto.",
        "cc_rejected_blacklist": "Pagamento não autorizado. Use outro cartão.",
        "cc_rejected_call_for_authorize": "Você precisa autorizar o pagamento com sua operadora.",
        "cc_rejected_card_disabled": "Cartão desabilitado. Entre em contato com sua operadora.",
        "cc_rejected_card_error": "Erro no cartão. Tente novamente ou use outro cartão.",
        "cc_rejected_duplicated_payment": "Você já fez um pagamento com esse valor recentemente.",
        "cc_rejected_high_risk": "Pagamento recusado por segurança. Use outro cartão ou pague com PIX.",
        "cc_rejected_insufficient_amount": "Saldo insuficiente.",
        "cc_rejected_invalid_installments": "Quantidade de parcelas inválida.",
        "cc_rejected_max_attempts": "Limite de tentativas excedido. Tente novamente mais tarde.",
        "cc_rejected_other_reason": "Pagamento não processado. Tente novamente.",
        "cc_amount_rate_limit_exceeded": (
            "Valor acima do limite para uma única compra no cartão. "
            "Pague com PIX ou divida a compra."
        ),
        "rejected_high_risk": "Pagamento recusado por segurança. Tente pagar com PIX.",
    },
}

# Gateway error causes returned when a charge cannot be opened
_REFUSAL_MESSAGES: Dict[str, str] = {
    "amount_too_high": "Valor acima do limite para uma única compra no cartão. Pague com PIX ou divida a compra.",
    "cc_amount_rate_limit_exceeded": (
        "Valor acima do limite para uma única compra no cartão. Pague com PIX ou divida a compra."
    ),
    "rate_limited": "Muitas tentativas em sequência. Aguarde um minuto e tente novamente.",
    "2067": "CPF inválido. Confira os dados do comprador.",
    "324": "CPF inválido. Confira os dados do comprador.",
    "4020": "URL de notificação inválida. Entre em contato com o suporte.",
    "13253": "Conta de recebimento sem chave PIX habilitada. Entre em contato com o suporte.",
    "3034": "Dados do cartão inválidos. Confira o número e a bandeira.",
    "2034": "Dados do comprador inválidos.",
}


def status_message(status: Optional[str], status_detail: Optional[str]) -> str:
    """Message for a payment status and its detail code."""
    status = (status or "").lower()
    detail = (status_detail or "").lower()
    message = _STATUS_MESSAGES.get(status, {}).get(detail)
    if message:
        return message
    if status == "approved":
        return "Pagamento aprovado!"
    if status in ("pending", "in_process", "authorized"):
        return "Pagamento em processamento."
    return "Pagamento não aprovado. Tente novamente."


def refusal_message(
    reason_codes: Sequence[str],
    gateway_message: Optional[str] = None,
    fallback: str = "Não foi possível processar o pagamento. Tente novamente.",
) -> str:
    """
    Message for a gateway refusal to open a charge.

    Known reason codes win; otherwise the gateway's own description is used,
    then ``fallback``.
    """
    for code in reason_codes:
        message = _REFUSAL_MESSAGES.get(str(code).lower())
        if message:
            return message
    if gateway_message:
        return gateway_message
    return fallback
