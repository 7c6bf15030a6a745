"""
Tagging utilities for consistent stack tagging across tiers.
"""

from typing import Dict, List, Optional

from .models import ComputeVariant

RESERVED_TAGS = ("Environment", "Project", "ComputeType", "Service")


def base_tags(project: str, environment: str, variant: ComputeVariant,
              service: Optional[str] = None, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate the tags applied to a stack.

    Args:
        project: Project name
        environment: Environment name
        variant: Compute variant
        service: Service name for project-tier stacks
        extra: Additional user tags, which may not override reserved keys

    Returns:
        Dictionary of tags
    """
    tags = {
        "Environment": environment,
        "Project": project,
        "ComputeType": variant.value,
    }
    if service:
        tags["Service"] = service

    if extra:
        for key, value in extra.items():
            if key not in RESERVED_TAGS:
                tags[key] = value

    return tags


def parse_user_tags(tag_strings: List[str]) -> Dict[str, str]:
    """
    Parse user-provided tag strings in format "key=value".

    Raises:
        ValueError: If tag string format is invalid
    """
    tags = {}

    for tag_str in tag_strings:
        if "=" not in tag_str:
            raise ValueError(f"Invalid tag format: {tag_str}. Expected 'key=value'")

        key, value = tag_str.split("=", 1)
        if not key.strip() or not value.strip():
            raise ValueError(f"Invalid tag format: {tag_str}. Key and value must not be empty")

        tags[key.strip()] = value.strip()

    return tags


def tags_from_stack(stack: Dict) -> Dict[str, str]:
    """Flatten the tag list of a described stack."""
    return {tag["Key"]: tag["Value"] for tag in stack.get("Tags", [])}
