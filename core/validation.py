"""Buyer and cart validation rules applied before any purchase row is written."""
import re
from typing import Optional

from core.exceptions import CheckoutValidationError

_NON_DIGITS = re.compile(r"\D")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def clean_cpf(value: Optional[str]) -> str:
    """Strip formatting (dots, dashes, spaces) from a CPF."""
    return _NON_DIGITS.sub("", value or "")


def is_valid_cpf(value: Optional[str]) -> bool:
    """
    Validate a CPF (Brazilian individual tax id) including both check digits.

    Sequences of one repeated digit pass the checksum but are not issued,
    so they are rejected.
    """
    digits = clean_cpf(value)
    if len(digits) != 11 or digits == digits[0] * 11:
        return False

    numbers = [int(d) for d in digits]
    for position in (9, 10):
        total = sum(numbers[i] * (position + 1 - i) for i in range(position))
        check = (total * 10) % 11 % 10
        if numbers[position] != check:
            return False
    return True


def validate_buyer(
    name: Optional[str],
    surname: Optional[str],
    email: Optional[str],
    tax_id: Optional[str],
) -> None:
    """
    Validate buyer fields sent with a checkout.

    Raises:
        CheckoutValidationError: On the first invalid field
    """
    if not email or not email.strip():
        raise CheckoutValidationError(
            "Dados do comprador incompletos (email e CPF são obrigatórios)", field="email"
        )
    if not _EMAIL.match(email.strip()):
        raise CheckoutValidationError("Email inválido", field="email")
    if not tax_id or not clean_cpf(tax_id):
        raise CheckoutValidationError(
            "Dados do comprador incompletos (email e CPF são obrigatórios)", field="taxId"
        )
    if len(clean_cpf(tax_id)) != 11:
        raise CheckoutValidationError("CPF deve ter 11 dígitos", field="taxId")
    if not is_valid_cpf(tax_id):
        raise CheckoutValidationError("CPF inválido", field="taxId")
    if not name or not name.strip():
        raise CheckoutValidationError("Nome é obrigatório", field="name")
    if not surname or not surname.strip():
        raise CheckoutValidationError("Sobrenome é obrigatório", field="surname")
