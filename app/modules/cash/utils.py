"""
Utilidades de exportación CSV para Caja
"""

import csv
import io
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List

from fastapi import Response

# Excel necesita el BOM para detectar UTF-8 (tildes en motivos)
UTF8_BOM = "\ufeff"

MOVEMENTS_CSV_HEADERS = {
    "created_at": "Fecha",
    "type": "Tipo",
    "amount": "Monto",
    "reason": "Motivo",
    "created_by": "Usuario",
    "reference": "Referencia",
}


def format_csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def render_csv(rows: List[Dict[str, Any]], headers: Dict[str, str]) -> str:
    """Arma el CSV (con BOM) usando el mapeo campo -> encabezado."""
    output = io.StringIO()
    fieldnames = list(headers.keys())
    writer = csv.DictWriter(output, fieldnames=fieldnames, extrasaction="ignore")
    writer.writerow(headers)
    for row in rows:
        writer.writerow({key: format_csv_value(row.get(key)) for key in fieldnames})
    content = output.getvalue()
    output.close()
    return UTF8_BOM + content


def movement_csv_row(movement) -> Dict[str, Any]:
    reference = ""
    if movement.reference_type and movement.reference_id:
        reference = f"{movement.reference_type}:{movement.reference_id}"
    return {
        "created_at": movement.created_at,
        "type": movement.type,
        "amount": movement.amount,
        "reason": movement.reason,
        "created_by": movement.created_by,
        "reference": reference,
    }


def create_csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename={filename}",
            "Content-Type": "text/csv; charset=utf-8"
        }
    )
