"""
Transactional email templates

Each template has an html and a text body rendered with str.format_map.
"""

_HTML_WRAPPER = """<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; color: #1f2937;">
  <div style="max-width: 600px; margin: 0 auto; padding: 24px;">
    {body}
    <p style="color: #6b7280; font-size: 12px;">You are receiving this email because of activity on your account.</p>
  </div>
</body>
</html>
"""


def _html(body: str) -> str:
    return _HTML_WRAPPER.replace("{body}", body)


EMAIL_TEMPLATES = {
    "payment-success": {
        "html": _html(
            """<h1>Payment successful</h1>
    <p>Hi {name},</p>
    <p>Your payment of {currency} {amount} was processed and your subscription is active.</p>
    <p><strong>Next billing date:</strong> {next_billing_date}</p>
    <p><a href="{dashboard_url}">Go to your dashboard</a></p>"""
        ),
        "text": (
            "Hi {name},\n\n"
            "Your payment of {currency} {amount} was processed and your subscription is active.\n\n"
            "Next billing date: {next_billing_date}\n\n"
            "Go to your dashboard: {dashboard_url}\n"
        ),
    },
    "payment-failure-downgrade": {
        "html": _html(
            """<h1>Payment issue: switched to the free plan</h1>
    <p>Hi {name},</p>
    <p>{reason}. We have moved you to the free plan so you keep access to your data.</p>
    <p><a href="{upgrade_url}">Update your payment method and upgrade</a></p>
    <p>Questions? <a href="{support_url}">Contact support</a> or head back to your <a href="{dashboard_url}">dashboard</a>.</p>"""
        ),
        "text": (
            "Hi {name},\n\n"
            "{reason}. We have moved you to the free plan so you keep access to your data.\n\n"
            "Upgrade again: {upgrade_url}\n"
            "Support: {support_url}\n"
            "Dashboard: {dashboard_url}\n"
        ),
    },
    "upgrade-reminder": {
        "html": _html(
            """<h1>Ready to upgrade again?</h1>
    <p>Hi {name},</p>
    <p>Your paid features are one step away.</p>
    <p><a href="{upgrade_url}">Upgrade now</a> or <a href="{features_url}">compare plans</a>.</p>"""
        ),
        "text": (
            "Hi {name},\n\n"
            "Your paid features are one step away.\n\n"
            "Upgrade now: {upgrade_url}\n"
            "Compare plans: {features_url}\n"
        ),
    },
    "fraud-alert": {
        "html": _html(
            """<h1>Account security alert</h1>
    <p>Hi {name},</p>
    <p>We received a fraud warning for a recent payment and have temporarily suspended your account.</p>
    <p>If this was you, please <a href="{support_url}">contact support</a> to verify your identity.</p>"""
        ),
        "text": (
            "Hi {name},\n\n"
            "We received a fraud warning for a recent payment and have temporarily suspended your account.\n\n"
            "If this was you, please contact support to verify your identity: {support_url}\n"
        ),
    },
    "account-restored": {
        "html": _html(
            """<h1>Your account has been restored</h1>
    <p>Hi {name},</p>
    <p>The review of your payment is complete and your account is active again.</p>
    <p><a href="{dashboard_url}">Go to your dashboard</a></p>"""
        ),
        "text": (
            "Hi {name},\n\n"
            "The review of your payment is complete and your account is active again.\n\n"
            "Dashboard: {dashboard_url}\n"
        ),
    },
}


def account_links(app_url: str) -> dict:
    """Links into the web app used by the templates"""
    base = app_url.rstrip("/")
    return {
        "dashboard_url": f"{base}/dashboard",
        "upgrade_url": f"{base}/account/billing",
        "support_url": f"{base}/support",
        "features_url": f"{base}/plans",
    }
