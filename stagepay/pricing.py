"""Credit bundles offered at checkout.

Prices are in cents. The server is the only source of truth for what a
bundle costs and how many credits it grants; the browser sends a bundle id.
"""

from collections import namedtuple

Bundle = namedtuple("Bundle", ["id", "credits", "price_cents", "label"])

BUNDLES = {
    "single": Bundle("single", 1, 1000, "Single photo"),
    "bundle_5": Bundle("bundle_5", 5, 4500, "5 photos"),
    "bundle_10": Bundle("bundle_10", 10, 8500, "10 photos"),
    "bundle_20": Bundle("bundle_20", 20, 16000, "20 photos"),
    "bundle_50": Bundle("bundle_50", 50, 37500, "50 photos"),
    "bundle_100": Bundle("bundle_100", 100, 70000, "100 photos"),
}


def get_bundle(bundle_id):
    """Return the Bundle for an id, or None."""
    return BUNDLES.get(bundle_id)


def bundle_to_dict(bundle):
    return {
        "id": bundle.id,
        "credits": bundle.credits,
        "price_cents": bundle.price_cents,
        "unit_price_cents": bundle.price_cents // bundle.credits,
        "label": bundle.label,
    }


def list_bundles():
    return [bundle_to_dict(b) for b in sorted(BUNDLES.values(), key=lambda b: b.credits)]
