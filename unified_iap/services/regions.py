"""
Region codes - ISO 3166-1 alpha-2 to alpha-3 conversion.

Google reports purchase regions as alpha-2; the unified model uses alpha-3,
which is what Apple storefronts already carry.
"""

import pycountry

from unified_iap.exceptions import InvalidResponseError

# User-assigned codes missing from ISO 3166-1, matched to Apple storefront codes
_OVERRIDES = {
    "XK": "XKS",  # Kosovo
}


def alpha2_to_alpha3(code: str, vendor: str = "google") -> str:
    """
    Convert an ISO 3166-1 alpha-2 region code to alpha-3.

    Raises:
        InvalidResponseError: If the code is not a known alpha-2 code
    """
    normalized = code.strip().upper()
    if normalized in _OVERRIDES:
        return _OVERRIDES[normalized]
    if len(normalized) != 2 or not normalized.isalpha():
        raise InvalidResponseError(vendor, f"Invalid region code: {code!r}")

    country = pycountry.countries.get(alpha_2=normalized)
    if country is None:
        raise InvalidResponseError(vendor, f"Unrecognized region code: {code!r}")
    return str(country.alpha_3)
