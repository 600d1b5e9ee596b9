"""Hostname helpers: registrable domain and subdomain split.

``api.eu.acme.co.uk`` -> registrable ``acme.co.uk``, subdomain ``api.eu``.
Multi-label public suffixes are matched against a short list of the ones
customers actually register under; every other top-level label counts as a
one-label suffix.
"""

from __future__ import annotations

import re

MULTI_LABEL_SUFFIXES = frozenset({
    "co.uk", "org.uk", "me.uk", "ltd.uk", "plc.uk", "ac.uk", "gov.uk",
    "com.au", "net.au", "org.au", "edu.au",
    "co.nz", "org.nz", "net.nz",
    "co.jp", "ne.jp", "or.jp",
    "com.br", "net.br", "org.br",
    "com.mx", "com.ar", "com.cn", "com.tw", "com.hk", "com.sg", "com.tr",
    "co.in", "net.in", "org.in",
    "co.za", "co.kr", "co.il",
})

_LABEL_RE = re.compile(r"^[a-z0-9-]+$")


def normalize(hostname: str) -> str:
    return hostname.strip().rstrip(".").lower()


def registrable_domain(hostname: str) -> str | None:
    """Return the registrable domain of ``hostname``, or ``None``.

    ``None`` means no registrable portion could be derived: a single label,
    a numeric top-level label, or a name that is itself a public suffix.
    """
    name = normalize(hostname)
    labels = name.split(".")
    if len(labels) < 2 or not all(_LABEL_RE.match(label) for label in labels):
        return None
    if labels[-1].isdigit():
        return None

    suffix_len = 2 if ".".join(labels[-2:]) in MULTI_LABEL_SUFFIXES else 1
    if len(labels) <= suffix_len:
        return None
    return ".".join(labels[-(suffix_len + 1):])


def split_host(hostname: str) -> tuple[str, str]:
    """``(subdomain, zone candidate)``; the whole name when nothing is registrable."""
    name = normalize(hostname)
    domain = registrable_domain(name)
    if domain is None or domain == name:
        return "", domain or name
    return name[: -(len(domain) + 1)], domain


def zone_candidates(hostname: str) -> list[str]:
    """Every zone that could carry ``hostname``, most specific first.

    ``a.b.acme.com`` -> ``["a.b.acme.com", "b.acme.com", "acme.com"]``.
    """
    subdomain, domain = split_host(hostname)
    candidates = [domain]
    labels = subdomain.split(".") if subdomain else []
    # Prepend one subdomain label at a time, closest to the domain first.
    for label in reversed(labels):
        candidates.append(f"{label}.{candidates[-1]}")
    return list(reversed(candidates))


__all__ = ["MULTI_LABEL_SUFFIXES", "normalize", "registrable_domain", "split_host", "zone_candidates"]
