"""
Cálculo de arqueo de caja.

Funciones puras, sin I/O: dado el saldo de apertura y los movimientos de una
sesión devuelven el saldo esperado y la diferencia contra lo contado. Se
recalculan en cada lectura; nunca se persisten.

Regla de signos sobre el monto almacenado:
    IN, SALE      -> +monto
    OUT, RETURN   -> -monto
    ADJUSTMENT    -> monto tal cual (ya viene con signo)
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterable, Mapping, Optional, Union

from app.modules.cash.exceptions import InvalidAmount
from app.modules.cash.models import MovementType

CENT = Decimal("0.01")

# Mayor valor que cabe en las columnas Numeric(15, 2)
MAX_STORABLE_AMOUNT = Decimal("9999999999999.99")

INFLOW_TYPES = frozenset({MovementType.IN, MovementType.SALE})
OUTFLOW_TYPES = frozenset({MovementType.OUT, MovementType.RETURN})


def to_money(value: Union[Decimal, int, str, None]) -> Decimal:
    """Normaliza un monto a Decimal con dos decimales."""
    if value is None:
        return Decimal("0.00")
    if isinstance(value, float):
        # Los float se convierten vía str para no arrastrar el error binario
        value = str(value)
    try:
        amount = Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount("Monto inválido o fuera de rango")
    if not amount.is_finite():
        raise InvalidAmount("Monto inválido o fuera de rango")
    return amount


def signed_amount(movement_type: MovementType, amount) -> Decimal:
    """Monto con signo según el tipo de movimiento"""
    amount = to_money(amount)
    if movement_type in INFLOW_TYPES:
        return abs(amount)
    if movement_type in OUTFLOW_TYPES:
        return -abs(amount)
    return amount


def compute_expected(opening_amount, movements: Iterable) -> Decimal:
    """
    Saldo esperado = apertura + suma de contribuciones con signo.

    La suma es conmutativa: el orden de los movimientos no afecta el resultado.
    """
    total = to_money(opening_amount)
    for movement in movements:
        total += signed_amount(movement.type, movement.amount)
    return total


def compute_discrepancy(closing_amount, expected_amount) -> Decimal:
    """Diferencia = contado - esperado. Positivo sobrante, negativo faltante."""
    return to_money(closing_amount) - to_money(expected_amount)


SUMMARY_KEYS = {
    MovementType.IN: "total_in",
    MovementType.OUT: "total_out",
    MovementType.SALE: "total_sales",
    MovementType.RETURN: "total_returns",
    MovementType.ADJUSTMENT: "total_adjustments",
}


def totals_from_sums(sums: Mapping[MovementType, Decimal]) -> Dict[str, Decimal]:
    """
    Totales por tipo a partir de sumas ya agregadas (p. ej. SUM ... GROUP BY type).

    Los ajustes quedan netos con signo; el resto son magnitudes.
    """
    summary = {key: Decimal("0.00") for key in SUMMARY_KEYS.values()}
    for movement_type, total in sums.items():
        total = to_money(total)
        if movement_type != MovementType.ADJUSTMENT:
            total = abs(total)
        summary[SUMMARY_KEYS[movement_type]] = total
    return summary


def summarize(movements: Iterable) -> Dict[str, Decimal]:
    """Totales por tipo de movimiento (ajustes netos con signo)."""
    sums: Dict[MovementType, Decimal] = {}
    for movement in movements:
        sums[movement.type] = sums.get(movement.type, Decimal("0.00")) + to_money(movement.amount)
    return totals_from_sums(sums)


def net_total(summary: Mapping[str, Decimal]) -> Decimal:
    return (summary["total_in"] + summary["total_sales"] + summary["total_adjustments"]
            - summary["total_out"] - summary["total_returns"])


@dataclass(frozen=True)
class Reconciliation:
    expected_amount: Decimal
    discrepancy_amount: Optional[Decimal]


def reconcile(opening_amount, movements: Iterable, closing_amount=None) -> Reconciliation:
    """Arqueo completo; la diferencia es None mientras no haya monto de cierre."""
    expected = compute_expected(opening_amount, movements)
    discrepancy = None
    if closing_amount is not None:
        discrepancy = compute_discrepancy(closing_amount, expected)
    return Reconciliation(expected_amount=expected, discrepancy_amount=discrepancy)
