"""Shared constants for Solana token metadata validation."""

from datetime import datetime, timezone

from spl.token.constants import TOKEN_PROGRAM_ID


# Utility function to get timezone-aware UTC datetime
def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


SECONDS_PER_DAY = 24 * 60 * 60

# Owner programs whose parsed account data describes an SPL mint.
MINT_PROGRAMS = frozenset({"spl-token", "spl-token-2022"})

TOKEN_PROGRAM_ADDRESS = str(TOKEN_PROGRAM_ID)

# Byte size of an SPL token account, used to filter holder enumeration.
TOKEN_ACCOUNT_SIZE = 165

# Holder count assumed for mints that are too large to enumerate.
LARGE_HOLDER_SENTINEL = 100_000

# Mints with historically huge holder counts; enumerating them exceeds RPC limits.
LARGEST_MINTS: tuple[str, ...] = (
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",  # USDC
    "kinXdEcpDQeHPEuQnqmUgtYykqKGVFq6CeVX5iAHJq6",  # KIN
    "XzR7CUMqhDBzbAm4aUNvwhVCxjWGn1KEvqTp3Y8fFCD",  # SCAM
    "AFbX8oGjGpmVFywbVouvhQSRmiW2aR1mohfahi4Y2AdB",  # GST
    "CKaKtYvz6dKPyMvYq9Rh3UBrnNqYZAyd7iF4hJtjUvks",  # GARI
    "xxxxa1sKNGwFtw2kFn8XauW9xq8hBZ5kVtcSesTT9fW",  # SLIM
    "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",  # USDT
    "7i5KKsX2weiTkry7jA4ZwSuXGhs5eJBEjY8vVxR4pfRx",  # GMT
    "foodQJAztMzX1DKpLaiounNe2BDMds5RNuPC6jsNrDG",  # FOOOOOOD
    "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R",  # RAY
    "So11111111111111111111111111111111111111112",  # SOL
    "9LzCMqDgTKYz9Drzqnpgee3SGa89up3a247ypMj2xrqM",  # AUDIO
)

DEFAULT_HEADERS = {"User-Agent": "solana-token-registry/1.0"}

__all__ = [
    "DEFAULT_HEADERS",
    "LARGEST_MINTS",
    "LARGE_HOLDER_SENTINEL",
    "MINT_PROGRAMS",
    "SECONDS_PER_DAY",
    "TOKEN_ACCOUNT_SIZE",
    "TOKEN_PROGRAM_ADDRESS",
    "utc_now",
]
