"""
Static credit package catalog.

Fulfillment cross-checks event metadata against this table; pricing itself is
managed upstream.
"""
from dataclasses import dataclass


@dataclass(frozen=True)
class CreditPackage:
    id: str
    credits: int
    price_cents: int
    currency: str = "USD"


CREDIT_PACKAGES: dict[str, CreditPackage] = {
    package.id: package
    for package in (
        CreditPackage(id="p100", credits=1200, price_cents=1000),
        CreditPackage(id="p250", credits=3000, price_cents=2500),
        CreditPackage(id="p500", credits=6500, price_cents=5000),
    )
}


def get_credit_package(package_id: str | None) -> CreditPackage | None:
    """Return the package for an id, or None if it is not in the catalog."""
    if not package_id:
        return None
    return CREDIT_PACKAGES.get(package_id)


def get_credit_package_for_credits(credits: int) -> CreditPackage | None:
    """Reverse lookup used when only the granted credit amount is known."""
    for package in CREDIT_PACKAGES.values():
        if package.credits == credits:
            return package
    return None
