"""Example usage of fieldfill - classify a checkout page and plan a fill."""

from fieldfill import AutofillCore, FieldType, Profile
from fieldfill.snapshot import snapshots_from_html

CHECKOUT_HTML = """
<form id="checkout">
  <h2>Shipping address</h2>
  <label for="fn">First name</label><input id="fn" name="fname">
  <label for="mail">Email</label><input id="mail" name="email_addr">
  <input name="postal" placeholder="Postcode">
  <input name="cc" autocomplete="cc-number">
</form>
"""


def main():
    """Run the example."""
    core = AutofillCore()

    profile = Profile()
    profile.set(FieldType.FIRST_NAME, "Ada")
    profile.set(FieldType.EMAIL, "ada@example.com")
    profile.set(FieldType.ZIP, "SW1A 1AA")
    core.save_profile(profile)

    soup, snapshots = snapshots_from_html(CHECKOUT_HTML, hostname="shop.example.com")
    fields = core.classify_many(snapshots)

    print("Detected fields:")
    for detected in fields:
        print(
            f"  {detected.field_type.value:<12} {detected.confidence.value:<8} "
            f"{detected.method.value:<12} {detected.score:.2f}"
        )

    plan = core.plan_fill(fields, hostname="shop.example.com")

    print("\nFill plan:")
    for action in plan.actions:
        print(f"  +{action.at_ms}ms {action.field_type} = {action.value}")
    for skipped in plan.skipped:
        print(f"  skipped {skipped.field_type} ({skipped.reason})")

    core.close()


if __name__ == "__main__":
    main()
