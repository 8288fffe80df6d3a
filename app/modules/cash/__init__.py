"""
Módulo de Caja - sesiones de caja por organización

ENTIDADES:
- CashSession: sesión con apertura/cierre y arqueo
- CashMovement: ledger append-only (IN, OUT, SALE, RETURN, ADJUSTMENT)
- CashCount: arqueo por denominación
- CashDiscrepancy: faltantes/sobrantes reportados

REGLAS DE NEGOCIO:
- Una sola sesión abierta por organización (índice único parcial)
- Movimientos solo contra sesiones abiertas
- Saldo esperado = apertura + movimientos con signo, recalculado en cada lectura
- Diferencia = contado - esperado (negativo es faltante)
- El cierre es condicional: de dos cierres simultáneos solo uno gana

PERMISOS:
- cash:read, cash:open, cash:close, cash:move, cash:reconcile
"""

from app.modules.cash.router import router as cash_router

__all__ = ["cash_router"]
