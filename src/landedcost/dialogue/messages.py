"""Assistant phrasing used by the dialogue engine."""

from __future__ import annotations

from typing import Sequence

from landedcost.models import TariffCandidate

ASK_PRODUCT = (
    "¡Hola! ¿Qué producto querés importar? Pegá el link del proveedor o describilo "
    "(ej: `autoelevador eléctrico 3 t`)."
)
ASK_PRICE = "Perfecto. ¿Cuál es el **precio unitario** del producto en **USD**? (ej: `USD 120`)"
ASK_QUANTITY = "Gracias. ¿Cuál es la **cantidad** a importar? (ej: `500 unidades`)"
REPROMPT_PRICE = "No pude leer el precio. Escribí solo el número en USD (ej: `USD 120`)."
REPROMPT_QUANTITY = "No pude leer la cantidad. Indicá cuántas unidades vas a traer (ej: `500`)."
ASK_CONTACT = (
    "¡Genial! Dejame tu **email** o **WhatsApp** y un especialista valida la posición "
    "arancelaria y la cotización con vos."
)
REPROMPT_CONTACT = "Para avanzar necesito un email o un número de WhatsApp válido."
ALREADY_CAPTURED = (
    "Ya registramos tus datos, un especialista te va a contactar. "
    "Si querés cotizar otro producto, pegá el link o describilo."
)
AFTER_QUOTE_HINT = (
    "Podés ajustar supuestos (ej: `Origen: China` o `perfil carga: pesada`). "
    "¿Querés avanzar con la importación?"
)
LINK_FAILED = (
    "No pude leer la página del producto. Igual sigo con lo que tengo; "
    "si podés, contame en una línea qué es."
)
DESCRIBE_MORE = (
    "Contame un poco más del producto (qué es, material, uso o potencia) "
    "para encontrar la posición arancelaria correcta."
)
RETRY_LATER = "Estoy procesando otro mensaje de esta conversación. Probá de nuevo en unos segundos."
FALLBACK = (
    "Tuve un problema procesando tu mensaje. La cotización queda pendiente de validación; "
    "probá de nuevo o dejá tu email para que te contacte un especialista."
)


def candidate_lines(candidates: Sequence[TariffCandidate], limit: int = 5) -> str:
    lines = []
    for index, candidate in enumerate(candidates[:limit], start=1):
        label = f" — {candidate.label}" if candidate.label else ""
        lines.append(f"{index}) `{candidate.code}`{label}")
    return "\n".join(lines)


def classification_prompt(questions: Sequence[str], candidates: Sequence[TariffCandidate]) -> str:
    parts = ["Para clasificar bien el producto necesito confirmar:"]
    parts.extend(f"- {question}" for question in questions)
    if candidates:
        parts.append("")
        parts.append("Si ya sabés cuál es, respondé con el número:")
        parts.append(candidate_lines(candidates))
    return "\n".join(parts)


def lead_captured(channel: str) -> str:
    medium = {"email": "por email", "whatsapp": "por WhatsApp"}.get(channel, "a la brevedad")
    return f"¡Gracias! Un especialista te va a contactar {medium} para validar la cotización."
