"""German VAT helpers for checkout pricing."""

from dataclasses import asdict, dataclass

GERMAN_STANDARD_VAT_RATE = 0.19
GERMAN_REDUCED_VAT_RATE = 0.07

STRIPE_COUNTRY = "DE"
STRIPE_CURRENCY = "eur"


@dataclass(frozen=True)
class TaxBreakdown:
    """Split of a gross amount (in cents) into net and VAT."""
    net_amount: int
    tax_amount: int
    gross_amount: int
    tax_rate: float

    def to_dict(self) -> dict:
        return asdict(self)

    def to_metadata(self) -> dict[str, str]:
        """Stripe metadata values must be strings."""
        return {
            "taxRate": str(self.tax_rate),
            "netAmount": str(self.net_amount),
            "taxAmount": str(self.tax_amount),
            "grossAmount": str(self.gross_amount),
        }


def calculate_german_tax(gross_amount: int, reduced: bool = False) -> TaxBreakdown:
    """Split a VAT-inclusive amount into net and tax parts.

    Args:
        gross_amount: Amount in cents including VAT
        reduced: Apply the reduced 7% rate instead of the standard 19%

    Returns:
        TaxBreakdown where net + tax == gross
    """
    tax_rate = GERMAN_REDUCED_VAT_RATE if reduced else GERMAN_STANDARD_VAT_RATE
    net_amount = round(gross_amount / (1 + tax_rate))
    return TaxBreakdown(
        net_amount=net_amount,
        tax_amount=gross_amount - net_amount,
        gross_amount=gross_amount,
        tax_rate=tax_rate,
    )
