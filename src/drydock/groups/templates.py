"""Group templates — which tool servers a group runs and how credentials reach them.

The built-in ``aws`` template ships in code. Additional templates are JSON
files (``*.json``) in ``settings.groups.template_dir``; keys may be camelCase
(``defaultImage``, ``credentialMapping``) or snake_case.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from drydock.config import Settings, get_settings
from drydock.errors import ConfigurationError
from drydock.logger import logger


class _TemplateModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class CredentialMapping(_TemplateModel):
    env: dict[str, str] = Field(default_factory=dict)
    aws_files: bool = False


class ServerDescriptor(_TemplateModel):
    id: str
    name: str
    command: str
    args: tuple[str, ...] | None = None


class GroupTemplate(_TemplateModel):
    slug: str
    name: str
    description: str = ""
    credential_contract_name: str
    default_image: str
    credential_mapping: CredentialMapping = Field(default_factory=CredentialMapping)
    servers: tuple[ServerDescriptor, ...] = ()

    def enabled_servers(self, server_ids: list[str] | tuple[str, ...]) -> list[ServerDescriptor]:
        """Descriptors for *server_ids*, in template order; unknown ids are ignored."""
        wanted = set(server_ids)
        unknown = wanted - {s.id for s in self.servers}
        if unknown:
            logger.warning("Ignoring unknown server ids", group=self.slug, ids=sorted(unknown))
        return [s for s in self.servers if s.id in wanted]


def _aws_server(server_id: str, name: str, command: str) -> ServerDescriptor:
    return ServerDescriptor(id=server_id, name=name, command=command)


AWS_TEMPLATE = GroupTemplate(
    slug="aws",
    name="AWS MCPs",
    description="Curated AWS MCP servers (CloudTrail, CloudWatch, IAM, S3, Lambda, DynamoDB, ...)",
    credential_contract_name="core.credential.aws",
    default_image="shipsec/mcp-aws-suite:latest",
    credential_mapping=CredentialMapping(
        env={
            "AWS_ACCESS_KEY_ID": "accessKeyId",
            "AWS_SECRET_ACCESS_KEY": "secretAccessKey",
            "AWS_SESSION_TOKEN": "sessionToken?",
            "AWS_REGION": "region?",
        },
        aws_files=True,
    ),
    servers=(
        _aws_server("aws-cloudtrail", "cloudtrail", "awslabs.cloudtrail-mcp-server"),
        _aws_server("aws-iam", "iam", "awslabs.iam-mcp-server"),
        _aws_server("aws-s3-tables", "s3-tables", "awslabs.s3-tables-mcp-server"),
        _aws_server("aws-cloudwatch", "cloudwatch", "awslabs.cloudwatch-mcp-server"),
        _aws_server("aws-network", "aws-network", "awslabs.aws-network-mcp-server"),
        _aws_server("aws-lambda", "lambda", "awslabs.lambda-tool-mcp-server"),
        _aws_server("aws-dynamodb", "dynamodb", "awslabs.dynamodb-mcp-server"),
        _aws_server(
            "aws-documentation", "aws-documentation", "awslabs.aws-documentation-mcp-server"
        ),
        _aws_server(
            "aws-well-architected",
            "well-architected-security",
            "awslabs.well-architected-security-mcp-server",
        ),
        _aws_server("aws-api", "aws-api", "awslabs.aws-api-mcp-server"),
    ),
)

BUILTIN_TEMPLATES: dict[str, GroupTemplate] = {AWS_TEMPLATE.slug: AWS_TEMPLATE}


def compute_template_hash(template: GroupTemplate) -> str:
    """Stable short hash of everything that affects provisioning."""
    content = json.dumps(template.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def load_template_file(path: Path) -> GroupTemplate:
    try:
        return GroupTemplate.model_validate(json.loads(path.read_text()))
    except (OSError, json.JSONDecodeError, PydanticValidationError) as exc:
        raise ConfigurationError(
            f"Invalid group template {path.name}: {exc}", details={"path": str(path)}
        ) from exc


def load_templates(directory: str | Path | None) -> dict[str, GroupTemplate]:
    """Read every ``*.json`` template in *directory*, keyed by slug."""
    if directory is None:
        return {}
    root = Path(directory)
    if not root.is_dir():
        logger.warning("Template directory does not exist", path=str(root))
        return {}

    templates: dict[str, GroupTemplate] = {}
    for path in sorted(root.glob("*.json")):
        template = load_template_file(path)
        if template.slug in templates:
            raise ConfigurationError(
                f"Duplicate group template slug {template.slug!r}", details={"path": str(path)}
            )
        templates[template.slug] = template
    logger.debug("Loaded group templates", path=str(root), count=len(templates))
    return templates


def all_templates(settings: Settings | None = None) -> dict[str, GroupTemplate]:
    """Built-in templates overlaid with the configured template directory."""
    s = settings or get_settings()
    return {**BUILTIN_TEMPLATES, **load_templates(s.groups.template_dir)}


def get_template(slug: str, settings: Settings | None = None) -> GroupTemplate:
    templates = all_templates(settings)
    if slug not in templates:
        raise ConfigurationError(
            f"Unknown group template: {slug!r}", details={"available": sorted(templates)}
        )
    return templates[slug]
