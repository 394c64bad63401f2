"""
Redirect target sanitization.

After the provider redirects back, the browser URL carries the callback
parameters. They are removed before the URL is used as a login target or a
post-login redirect so they are never replayed.
"""

from urllib.parse import urlsplit, urlunsplit

OIDC_PARAMS = frozenset(
    {"code", "state", "session_state", "iss", "id_token_hint", "post_logout_redirect_uri"}
)


def strip_oidc_params(uri: str) -> str:
    """
    Remove OIDC callback parameters from *uri*.

    Other parameters keep their order and their original encoding. When no
    parameters remain the query is dropped entirely, so ``/page?code=x``
    becomes ``/page``. Applying the function twice gives the same result as
    applying it once.
    """
    parts = urlsplit(uri)
    if not parts.query:
        return urlunsplit(parts._replace(query=""))

    kept = []
    for pair in parts.query.split("&"):
        if not pair:
            continue
        name = pair.split("=", 1)[0]
        if name in OIDC_PARAMS:
            continue
        kept.append(pair)

    return urlunsplit(parts._replace(query="&".join(kept)))
