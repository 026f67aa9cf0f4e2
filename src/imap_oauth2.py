"""
IMAP OAuth2 Authentication

Token acquisition for XOAUTH2 logins against Microsoft 365 / Outlook and
Gmail. The provider is detected from the IMAP host name.

- Microsoft: MSAL device code flow; the tenant is discovered from the e-mail
  domain through the OpenID Connect discovery document.
- Google: installed-app flow from google-auth-oauthlib (opens a browser).
"""

import http.client
import json
import os
import re
import ssl
import urllib.parse

from imap_errors import ImapAuthError

MICROSOFT_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]
GOOGLE_SCOPES = ["https://mail.google.com/"]

_TENANT_RE = re.compile(r"/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})")

# domain -> tenant_id
_tenant_cache = {}


def detect_oauth2_provider(host):
    """
    Detects the OAuth2 provider from the IMAP host.
    Returns "microsoft", "google", or None if unrecognized.
    """
    host_lower = (host or "").lower()
    if "outlook" in host_lower or "office365" in host_lower or "microsoft" in host_lower:
        return "microsoft"
    if "gmail" in host_lower or "google" in host_lower:
        return "google"
    return None


def _fetch_json_https(host, path, timeout=10):
    """GET a JSON document. `host` may be a bare host name or an http(s) base URL."""
    use_https = True
    if host.startswith(("http://", "https://")):
        parsed = urllib.parse.urlparse(host)
        use_https = parsed.scheme == "https"
        path = f"{parsed.path.rstrip('/')}{path}"
        host = parsed.netloc

    if use_https:
        conn = http.client.HTTPSConnection(host, timeout=timeout, context=ssl.create_default_context())
    else:
        conn = http.client.HTTPConnection(host, timeout=timeout)
    try:
        conn.request("GET", path, headers={"Accept": "application/json"})
        response = conn.getresponse()
        body = response.read()
    finally:
        conn.close()

    if response.status != 200:
        raise RuntimeError(f"Unexpected HTTP status {response.status}")
    return json.loads(body.decode("utf-8"))


def discover_microsoft_tenant(email):
    """
    Returns the Microsoft tenant ID for the domain of `email`, or None.
    Results are cached per domain.
    """
    domain = email.split("@")[-1].strip().lower() if email else ""
    if not domain:
        return None
    if domain in _tenant_cache:
        return _tenant_cache[domain]

    discovery_host = os.getenv("OAUTH2_MICROSOFT_DISCOVERY_URL") or "login.microsoftonline.com"
    path = f"/{urllib.parse.quote(domain, safe='.-')}/.well-known/openid-configuration"
    try:
        data = _fetch_json_https(discovery_host, path)
    except (OSError, http.client.HTTPException, RuntimeError, ValueError):
        return None

    match = _TENANT_RE.search(data.get("issuer", ""))
    if not match:
        return None
    _tenant_cache[domain] = match.group(1)
    return match.group(1)


def acquire_microsoft_token(client_id, email, print_fn=print):
    tenant_id = discover_microsoft_tenant(email)
    if not tenant_id:
        raise ImapAuthError(f"Could not discover Microsoft tenant for '{email}'")

    import msal

    authority_base = os.getenv("OAUTH2_MICROSOFT_AUTHORITY_BASE_URL") or "https://login.microsoftonline.com"
    app = msal.PublicClientApplication(client_id, authority=f"{authority_base.rstrip('/')}/{tenant_id}")

    flow = app.initiate_device_flow(scopes=MICROSOFT_SCOPES)
    if "user_code" not in flow:
        raise ImapAuthError(f"Could not initiate device flow: {flow.get('error_description', 'unknown error')}")
    print_fn(flow["message"])

    result = app.acquire_token_by_device_flow(flow)
    if "access_token" not in result:
        raise ImapAuthError(f"Could not acquire token: {result.get('error_description', 'unknown error')}")
    return result["access_token"]


def acquire_google_token(client_id, client_secret, print_fn=print):
    if not client_secret:
        raise ImapAuthError("An OAuth2 client secret is required for Google (--oauth2-client-secret)")

    from google_auth_oauthlib.flow import InstalledAppFlow

    client_config = {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": os.getenv("OAUTH2_GOOGLE_AUTH_URL") or "https://accounts.google.com/o/oauth2/auth",
            "token_uri": os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }
    flow = InstalledAppFlow.from_client_config(client_config, scopes=GOOGLE_SCOPES)
    print_fn("Opening browser for Google authentication...")
    credentials = flow.run_local_server(port=0)
    if not credentials or not credentials.token:
        raise ImapAuthError("Could not acquire Google OAuth2 token")
    return credentials.token


def acquire_token(host, client_id, email, client_secret=None, print_fn=print):
    """
    Detect the provider from `host` and acquire an access token.

    Raises:
        ImapAuthError: provider unknown or the token could not be obtained.
    """
    provider = detect_oauth2_provider(host)
    if provider == "microsoft":
        return acquire_microsoft_token(client_id, email, print_fn)
    if provider == "google":
        return acquire_google_token(client_id, client_secret, print_fn)
    raise ImapAuthError(f"Could not detect OAuth2 provider from host '{host}'")


def build_xoauth2_string(user, token):
    """SASL XOAUTH2 initial client response (RFC 7628 style, as used by Gmail/Outlook)."""
    return f"user={user}\x01auth=Bearer {token}\x01\x01"
