"""
Order intake normalization.

Incoming orders arrive from web forms, the mobile app and ticket-import
automations, each naming the same field differently. normalize_order_payload
maps such a raw dict onto one OrderCreateCommand; the engine never sees the
raw keys. When type or status is not given explicitly they are derived from
free-text fields with the rule tables below (first match wins).
"""

import logging
import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fieldops.exceptions import InvalidOperationError
from fieldops.models import ORDER_STATUSES, ORDER_TYPES
from fieldops.schemas import OrderCreateCommand

logger = logging.getLogger(__name__)


# =============================================================================
# FIELD ALIASES (keys compared after lower-casing, accent stripping and
# turning spaces/hyphens into underscores)
# =============================================================================

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "ticket_id": ("ticket_id", "ticketid", "ticket", "nro_ticket", "numero_ticket"),
    "subscriber_number": (
        "subscriber_number", "subscribernumber", "numero_abonado", "nro_abonado",
        "n_abonado", "abonado", "account_number", "contrato",
    ),
    "subscriber_name": (
        "subscriber_name", "subscribername", "nombre_abonado", "nombre_cliente",
        "cliente", "customer_name", "nombre", "name",
    ),
    "address": ("address", "direccion", "domicilio", "ubicacion"),
    "phones": ("phones", "phone", "telefonos", "telefono", "celular", "contacto"),
    "email": ("email", "correo", "mail", "e_mail"),
    "node": ("node", "nodo"),
    "services_to_install": (
        "services_to_install", "servicestoinstall", "servicios", "services", "plan",
    ),
    "type": ("type", "tipo", "order_type", "ordertype", "tipo_orden"),
    "status": ("status", "estado"),
    "crew_number": ("crew_number", "crewnumber", "numero_cuadrilla", "nro_cuadrilla", "cuadrilla"),
    "assigned_to": ("assigned_to", "assignedto", "crew_id", "crewid"),
    "reception_date": ("reception_date", "receptiondate", "fecha_recepcion", "fecha"),
}

# Free-text fields consulted by the classifiers when type/status are absent
FREE_TEXT_KEYS: Tuple[str, ...] = (
    "description", "descripcion", "observaciones", "observations", "motivo",
    "comments", "comentarios", "detalle", "asunto", "subject",
)


# =============================================================================
# CLASSIFICATION RULES (pattern fragments -> category, in priority order)
# =============================================================================

DEFAULT_ORDER_TYPE = "other"
ORDER_TYPE_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("recuperacion", "recupero", "retiro", "desinstal", "recovery"), "recovery"),
    (("averia", "falla", "reparacion", "sin servicio", "no navega", "repair", "fault"), "repair"),
    (("instalacion", "instalar", "alta de servicio", "nuevo servicio", "install"), "installation"),
)

DEFAULT_ORDER_STATUS = "pending"
ORDER_STATUS_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("cancel", "anulad"), "cancelled"),
    (("complet", "finaliz", "cerrad", "done"), "completed"),
    (("en curso", "en proceso", "in progress", "in_progress"), "in_progress"),
    (("visita", "visit"), "visit"),
    (("dificil", "hard"), "hard"),
    (("asignad", "assigned"), "assigned"),
    (("pendiente", "pending", "nuevo", "new"), "pending"),
)


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower().strip()


def _key(raw_key: str) -> str:
    return re.sub(r"[\s\-]+", "_", _fold(str(raw_key)))


def _classify(texts: Iterable[Optional[str]], rules, canonical: Iterable[str], default: str) -> str:
    folded = [_fold(t) for t in texts if t]
    for text in folded:
        if text in canonical:
            return text
    for patterns, category in rules:
        for text in folded:
            if any(pattern in text for pattern in patterns):
                return category
    return default


def classify_order_type(*texts: Optional[str]) -> str:
    """Map free text (e.g. 'Instalación fibra', 'AVERIA') to an order type."""
    return _classify(texts, ORDER_TYPE_RULES, ORDER_TYPES, DEFAULT_ORDER_TYPE)


def classify_order_status(*texts: Optional[str]) -> str:
    """Map free text (e.g. 'Pendiente', 'Finalizada') to an order status."""
    return _classify(texts, ORDER_STATUS_RULES, ORDER_STATUSES, DEFAULT_ORDER_STATUS)


def _split_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return [part.strip() for part in re.split(r"[,;/|]", str(value)) if part.strip()]


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = re.search(r"\d+", str(value))
    return int(match.group()) if match else None


DATE_FORMATS = ("%d/%m/%Y %H:%M", "%d/%m/%Y", "%Y-%m-%d %H:%M:%S", "%d-%m-%Y")


def _parse_date(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    logger.warning(f"Unrecognized reception date {text!r}, using intake time")
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_order_payload(raw: Dict[str, Any]) -> OrderCreateCommand:
    """Build an OrderCreateCommand from a raw intake payload."""
    if not isinstance(raw, dict):
        raise InvalidOperationError("Order payload must be an object")

    by_key = {_key(k): v for k, v in raw.items()}
    values: Dict[str, Any] = {}
    for field, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            if alias in by_key and by_key[alias] not in (None, ""):
                values[field] = by_key[alias]
                break

    free_text = [_text(by_key.get(k)) for k in FREE_TEXT_KEYS]
    explicit_type = _text(values.get("type"))
    explicit_status = _text(values.get("status"))

    missing = [f for f in ("subscriber_name", "address") if not _text(values.get(f))]
    if missing:
        raise InvalidOperationError(f"Missing required order field(s): {', '.join(missing)}")

    command = OrderCreateCommand(
        ticket_id=_text(values.get("ticket_id")),
        subscriber_number=_text(values.get("subscriber_number")),
        subscriber_name=_text(values["subscriber_name"]),
        address=_text(values["address"]),
        phones=_split_list(values.get("phones")),
        email=_text(values.get("email")),
        node=_text(values.get("node")),
        services_to_install=_split_list(values.get("services_to_install")),
        type=classify_order_type(explicit_type) if explicit_type else classify_order_type(*free_text),
        status=classify_order_status(explicit_status) if explicit_status else classify_order_status(*free_text),
        crew_number=_parse_int(values.get("crew_number")),
        assigned_to=_parse_int(values.get("assigned_to")),
        reception_date=_parse_date(values.get("reception_date")),
    )
    logger.debug(f"Normalized order payload for {command.subscriber_name} as {command.type}/{command.status}")
    return command
