"""Marketplace fee arithmetic.

All amounts are wei-denominated Python ints; nothing here ever touches a
float, so the results are exact for any uint256 price.
"""

BPS_DENOMINATOR = 10_000
DEFAULT_PLATFORM_FEE_BPS = 250


def bps_fee(price_wei: int, basis_points: int) -> int:
    """floor(price * bps / 10000)."""
    price_wei = int(price_wei)
    basis_points = int(basis_points)
    if price_wei < 0 or basis_points < 0:
        raise ValueError("price and basis points must be non-negative")
    return price_wei * basis_points // BPS_DENOMINATOR


def platform_fee(price_wei: int, basis_points: int = DEFAULT_PLATFORM_FEE_BPS) -> int:
    return bps_fee(price_wei, basis_points)


def royalty_fee(price_wei: int, royalty_bps: int) -> int:
    return bps_fee(price_wei, royalty_bps)


def format_ether(wei: int) -> str:
    """Human readable ether amount, for log lines only."""
    wei = int(wei)
    whole, frac = divmod(wei, 10**18)
    if not frac:
        return str(whole)
    return f"{whole}.{str(frac).rjust(18, '0').rstrip('0')}"
