from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from jsonschema import Draft202012Validator
from jsonschema import ValidationError as SchemaError

from vsxregistry.schemas import NamespaceDetails

DISPLAY_NAME_MAX_LENGTH = 32
DESCRIPTION_MAX_LENGTH = 255

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_JPEG_SIGNATURE = b"\xff\xd8\xff"

_FIELD_LABELS = {
    "display_name": "displayName",
    "description": "description",
    "website": "website",
    "support_link": "supportLink",
    "logo": "logo",
}
_SOCIAL_LABELS = {
    "github": "GitHub",
    "linkedin": "LinkedIn",
    "twitter": "Twitter",
}

_NAMESPACE_DETAILS_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "display_name": {"type": "string", "maxLength": DISPLAY_NAME_MAX_LENGTH},
        "description": {"type": "string", "maxLength": DESCRIPTION_MAX_LENGTH},
        "website": {"type": "string"},
        "support_link": {"type": "string"},
        "logo": {"type": "string"},
        "social_links": {
            "type": "object",
            "properties": {
                "github": {"type": "string", "pattern": r"^https://github\.com/[^/]+/?$"},
                "linkedin": {
                    "type": "string",
                    "pattern": r"^https://www\.linkedin\.com/(company|in)/[^/]+/?$",
                },
                "twitter": {"type": "string", "pattern": r"^https://twitter\.com/[^/]+/?$"},
            },
            "additionalProperties": False,
        },
    },
    "required": ["name"],
}


@dataclass(frozen=True)
class Issue:
    message: str

    def __str__(self) -> str:
        return self.message


def _issue_from_schema_error(error: SchemaError) -> Issue:
    path = list(error.path)
    field = str(path[-1]) if path else ""
    if error.validator == "maxLength":
        label = _FIELD_LABELS.get(field, field)
        return Issue(
            f"The field '{label}' exceeds the current limit of {error.validator_value} characters."
        )
    if error.validator == "pattern" and field in _SOCIAL_LABELS:
        return Issue(f"Invalid {_SOCIAL_LABELS[field]} URL: {error.instance}")
    if error.validator == "additionalProperties" and path == ["social_links"]:
        unexpected = sorted(set(error.instance) - set(_SOCIAL_LABELS))
        return Issue(f"Unsupported social link provider: {', '.join(unexpected)}")
    return Issue(error.message)


class NamespaceDetailsValidator:
    """Checks namespace details before they are applied.

    Structural rules (types, lengths, social link formats) are expressed as
    a JSON schema; character, URL and logo checks follow in Python.
    """

    def __init__(self) -> None:
        self._schema_validator = Draft202012Validator(_NAMESPACE_DETAILS_SCHEMA)

    def validate(self, details: NamespaceDetails) -> List[Issue]:
        instance = details.model_dump(by_alias=False, exclude={"logo_bytes"}, exclude_none=True)
        errors = sorted(
            self._schema_validator.iter_errors(instance), key=lambda e: e.json_path
        )
        issues = [_issue_from_schema_error(error) for error in errors]

        self._check_characters(details.display_name, "display_name", issues)
        self._check_characters(details.description, "description", issues, allow_whitespace=True)
        self._check_url(details.website, "website", issues)
        self._check_url(details.support_link, "support_link", issues)
        if details.logo_bytes:
            self._check_logo(details.logo_bytes, issues)
        return issues

    @staticmethod
    def _check_characters(
        value: Optional[str],
        field: str,
        issues: List[Issue],
        *,
        allow_whitespace: bool = False,
    ) -> None:
        if not value:
            return
        for char in value:
            if allow_whitespace and char in "\n\r\t":
                continue
            if unicodedata.category(char) in ("Cc", "Cs", "Co", "Cn"):
                issues.append(Issue(f"Invalid character found in field '{_FIELD_LABELS[field]}'."))
                return

    @staticmethod
    def _check_url(value: Optional[str], field: str, issues: List[Issue]) -> None:
        if not value:
            return
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            issues.append(Issue(f"Invalid URL in field '{_FIELD_LABELS[field]}': {value}"))

    @staticmethod
    def _check_logo(data: bytes, issues: List[Issue]) -> None:
        if not (data.startswith(_PNG_SIGNATURE) or data.startswith(_JPEG_SIGNATURE)):
            issues.append(Issue("Namespace logo should be a png or jpg file."))


def format_issues(issues: List[Issue]) -> str:
    if len(issues) == 1:
        return str(issues[0])
    return "Multiple issues were found in the extension metadata:\n" + "\n".join(
        str(issue) for issue in issues
    )
