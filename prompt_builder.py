"""
Prompt construction for calavera generation.
"""

import os
import logging
from typing import Dict, Any, Optional

from params_config import PROMPT_FILE

logger = logging.getLogger(__name__)

FALLBACK_TEMPLATE = (
    'Escribe una calavera literaria de Día de Muertos de 3 cuartetos rimados para "{{nombre}}". '
    "Detalles: {{detalles}}. Tono: {{tono}}. "
    "Entrega solo la calavera, sin saludo ni despedida."
)


def load_template(path: Optional[str] = None) -> str:
    """Read the prompt template, falling back to a built-in one."""
    template_file_path = path or os.path.join(os.path.dirname(os.path.abspath(__file__)), PROMPT_FILE)
    try:
        with open(template_file_path, "r", encoding="utf-8") as f:
            return f.read().strip()
    except OSError as e:
        logger.error(f"Failed to load prompt template from file: {e}")
        logger.warning("Using fallback prompt")
        return FALLBACK_TEMPLATE


def describe(details: Dict[str, Any], company_name: Optional[str] = None) -> str:
    """Build the details sentence from profession, job title and tastes."""
    profesion = (details.get("profesion") or "").strip()
    puesto = (details.get("puesto") or "").strip()
    gustos = (details.get("gustos") or "").strip()

    text = ""
    if profesion:
        text += f"que tenía la profesión de {profesion}"
    if puesto and company_name:
        text += f" (específicamente {puesto} en {company_name})"
    elif puesto:
        text += f" (específicamente {puesto})"
    if gustos:
        text += f" y le encantaba {gustos}"
    return text.strip()


def build_prompt(
    details: Dict[str, Any],
    company_name: Optional[str] = None,
    template: Optional[str] = None,
) -> str:
    """Render the generation prompt for one request."""
    template = template if template is not None else load_template()
    prompt = (
        template
        .replace("{{nombre}}", (details.get("nombre") or "").strip())
        .replace("{{detalles}}", describe(details, company_name))
        .replace("{{tono}}", (details.get("tono") or "").strip())
    )
    logger.debug(f"Prompt generated: {len(prompt)} chars")
    return prompt
