"""Deterministic hashing helpers used to key compiled kernels."""

from __future__ import annotations

from collections.abc import Iterable

from blake3 import blake3

Part = str | int | float | bytes


def _to_bytes(x: Part) -> bytes:
    if isinstance(x, bytes):
        return x
    if isinstance(x, str):
        return x.encode("utf-8", errors="surrogatepass")
    # ints/floats: stable textual form
    return repr(x).encode("utf-8")


def _join_parts(parts: Iterable[Part]) -> bytes:
    # \x1f = ASCII unit separator (rare in text)
    return b"\x1f".join(_to_bytes(p) for p in parts)


def digest(parts: Iterable[Part], *, domain: str = "gpunet", out_len: int = 32) -> bytes:
    """BLAKE3 digest of ``parts`` under ``domain``, ``out_len`` bytes long."""
    msg = _join_parts([domain] + list(parts))
    return blake3(msg).digest(length=out_len)


def stable_hex(*parts: Part, domain: str = "gpunet", out_len: int = 16) -> str:
    """Hex digest, convenient as a dictionary or log key."""
    return digest(parts, domain=domain, out_len=out_len).hex()
