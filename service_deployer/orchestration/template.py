"""
Revision templates.

A template is a YAML (or JSON) document describing a deployable revision with
``${IMAGE_TAG}`` and ``${REGISTRY}`` placeholders, for example::

    family: quickserve
    image: ${REGISTRY}/quickserve:${IMAGE_TAG}
    replicas: 2
    env:
      NODE_ENV: production
"""

import logging
from pathlib import Path
from string import Template
from typing import Dict, Optional, Union

import aiofiles  # type: ignore
import yaml
from pydantic import BaseModel, Field, ValidationError

from service_deployer.errors import ErrorKind, OrchestrationError

logger = logging.getLogger(__name__)


class RevisionTemplate(BaseModel):
    """Validated content of a rendered revision template."""

    family: str = Field(..., min_length=1, description="Revision family (name prefix)")
    image: str = Field(..., min_length=1, description="Fully qualified image reference")
    env: Dict[str, str] = Field(default_factory=dict, description="Container environment")
    labels: Dict[str, str] = Field(default_factory=dict, description="Container labels")
    replicas: Optional[int] = Field(None, ge=0, description="Desired instance count")


def render_template(template: str, image_tag: str, registry: str = "") -> RevisionTemplate:
    """
    Substitute placeholders and validate a revision template.

    Args:
        template: Raw template text
        image_tag: Value for ``${IMAGE_TAG}``
        registry: Value for ``${REGISTRY}``

    Returns:
        Validated revision template

    Raises:
        OrchestrationError: FATAL if the template is malformed
    """
    rendered = Template(template).safe_substitute(IMAGE_TAG=image_tag, REGISTRY=registry)

    try:
        data = yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        raise OrchestrationError(
            f"Template is not valid YAML/JSON: {e}", ErrorKind.FATAL, "register_revision"
        ) from e

    if not isinstance(data, dict):
        raise OrchestrationError(
            "Template must be a mapping", ErrorKind.FATAL, "register_revision"
        )

    # Stringify env values so that `PORT: 3000` is accepted
    if isinstance(data.get("env"), dict):
        data["env"] = {k: str(v) for k, v in data["env"].items()}

    try:
        revision = RevisionTemplate(**data)
    except ValidationError as e:
        raise OrchestrationError(
            f"Template failed validation: {e}", ErrorKind.FATAL, "register_revision"
        ) from e

    if "${" in revision.image:
        raise OrchestrationError(
            f"Unresolved placeholder in image: {revision.image}",
            ErrorKind.FATAL,
            "register_revision",
        )

    return revision


async def load_template(path: Union[str, Path]) -> str:
    """
    Read a revision template from disk.

    Raises:
        OrchestrationError: FATAL if the file cannot be read
    """
    template_path = Path(path)
    try:
        async with aiofiles.open(template_path, "r") as f:
            content = await f.read()
    except OSError as e:
        raise OrchestrationError(
            f"Template file not readable: {template_path} ({e})",
            ErrorKind.FATAL,
            "load_template",
        ) from e

    logger.debug(f"Loaded revision template from {template_path}")
    return str(content)
