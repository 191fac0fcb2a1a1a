"""
Template requests and the mapping from template identifiers to origin URLs.

A host asks for templates by name, e.g. ``redis:kabeleins_local``. Only
names carrying the resolver prefix are handled; the part after the prefix
is the identifier used as the key in every cache tier.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional


@dataclass(frozen=True)
class TemplateRequest:
    """One lookup issued by the rendering host."""
    name: str
    identifier: str
    prefix: str = ""
    partial: bool = False
    details: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_name(
        cls,
        name: str,
        prefix: str = "",
        partial: bool = False,
        details: Optional[Mapping[str, Any]] = None,
        name_prefix: str = "redis:",
    ) -> Optional["TemplateRequest"]:
        """Build a request, or return None if `name` is not ours to answer."""
        if not name.startswith(name_prefix):
            return None

        return cls(
            name=name,
            identifier=name[len(name_prefix):],
            prefix=prefix,
            partial=partial,
            details=dict(details or {}),
        )

    @property
    def virtual_path(self) -> str:
        if self.prefix:
            return f"{self.prefix}/{self.name}"
        return self.name


# (identifier, request) -> origin URL, or None when the host has no rule
UrlFor = Callable[[str, TemplateRequest], Optional[str]]


def no_urls(identifier: str, request: TemplateRequest) -> Optional[str]:
    """URL mapping that never resolves; the origin tier is skipped."""
    return None


class TemplateUrlMap:
    """
    Static identifier to URL mapping usable as a `UrlFor`.

    Explicit entries win over `url_pattern`, which is formatted with
    ``identifier`` and any string values from the request details, e.g.
    ``"https://layouts.example.com/{application}/{identifier}.mustache"``.
    """

    def __init__(self, urls: Optional[Dict[str, str]] = None, url_pattern: Optional[str] = None):
        self.urls = dict(urls or {})
        self.url_pattern = url_pattern

    def __call__(self, identifier: str, request: TemplateRequest) -> Optional[str]:
        if identifier in self.urls:
            return self.urls[identifier]

        if self.url_pattern is None:
            return None

        params = {k: v for k, v in request.details.items() if isinstance(v, str)}
        params["identifier"] = identifier
        try:
            return self.url_pattern.format(**params)
        except KeyError:
            # Pattern needs context this request does not carry
            return None
