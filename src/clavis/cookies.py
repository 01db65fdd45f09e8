"""Cookie descriptors and the attribute policy applied to them.

Descriptors are framework-neutral values: the session core returns them and
the routing layer applies them to whatever response object it uses.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from http.cookies import SimpleCookie
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from starlette.responses import Response

    from clavis.config import OIDCSettings

SameSite = Literal["lax", "strict", "none"]

_EPOCH = "Thu, 01 Jan 1970 00:00:00 GMT"


@dataclass(frozen=True, slots=True)
class CookieDescriptor:
    """A single ``Set-Cookie`` instruction.

    ``max_age == 0`` deletes the cookie.
    """

    name: str
    value: str
    max_age: int
    path: str = "/"
    domain: str | None = None
    secure: bool = False
    http_only: bool = True
    same_site: SameSite = "lax"

    @property
    def is_deletion(self) -> bool:
        return self.max_age == 0

    def serialize(self) -> str:
        """Render the ``Set-Cookie`` header value."""
        morsel = SimpleCookie()
        morsel[self.name] = self.value
        attrs = morsel[self.name]
        attrs["path"] = self.path
        attrs["max-age"] = str(self.max_age)
        if self.is_deletion:
            attrs["expires"] = _EPOCH
        if self.domain:
            attrs["domain"] = self.domain
        if self.secure:
            attrs["secure"] = True
        if self.http_only:
            attrs["httponly"] = True
        attrs["samesite"] = self.same_site.capitalize()
        return attrs.OutputString()

    def apply(self, response: Response) -> None:
        """Set this cookie on a Starlette response."""
        response.set_cookie(
            key=self.name,
            value=self.value,
            max_age=self.max_age,
            expires=_EPOCH if self.is_deletion else None,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=self.http_only,
            samesite=self.same_site,
        )


@dataclass(frozen=True, slots=True)
class CookiePolicy:
    """Attributes shared by every cookie the session core writes.

    Attributes:
        max_age: Lifetime of the session cookies in seconds.
        domain: Optional ``Domain`` attribute.
        secure: ``Secure`` flag; forced on for ``SameSite=None``.
        same_site: ``SameSite`` attribute.
    """

    max_age: int
    domain: str | None = None
    secure: bool = False
    same_site: SameSite = "lax"

    @classmethod
    def from_settings(cls, settings: OIDCSettings) -> CookiePolicy:
        same_site = settings.cookie_same_site
        return cls(
            max_age=settings.cookie_max_age,
            domain=settings.cookie_domain,
            secure=settings.secure_cookies or same_site == "none",
            same_site=same_site,
        )

    def cookie(self, name: str, value: str, max_age: int | None = None) -> CookieDescriptor:
        """Describe a cookie carrying ``value`` under this policy."""
        return CookieDescriptor(
            name=name,
            value=value,
            max_age=self.max_age if max_age is None else max_age,
            domain=self.domain,
            secure=self.secure,
            same_site=self.same_site,
        )

    def deletion(self, name: str) -> CookieDescriptor:
        """Describe the deletion of cookie ``name``."""
        return replace(self.cookie(name, ""), max_age=0)
