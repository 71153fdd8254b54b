"""
Connection-string rewriting for temporary Atlas users.

Turns the cluster's public SRV connection string into an authenticated URI and
masks such URIs before they reach a log line.
"""

from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from broker_errors import InvalidConnectionString, UriAlreadyHasCredentials

SRV_SCHEME = "mongodb+srv"
AUTH_SOURCE = "admin"
DEFAULT_DATABASE = "admin"
MASK_TOKEN = "***"

# Compared case-insensitively, as the driver does for URI options
RESERVED_QUERY_KEYS = frozenset({"authsource", "authmechanism"})


def _split_srv(uri):
    parts = urlsplit(uri)
    if parts.scheme != SRV_SCHEME or not parts.netloc:
        raise InvalidConnectionString(f"Expected a {SRV_SCHEME}:// connection string")
    return parts


def rewrite(srv_base, username, password, database=None, extra_query=None):
    """
    Insert credentials, a default database and authSource=admin into an SRV URI.

    Args:
        srv_base (str): Cluster connection string as advertised by Atlas, without credentials
        username (str): Database username
        password (str): Database password
        database (str, optional): Default database path. Falls back to admin.
        extra_query (dict, optional): Additional URI options; reserved keys are dropped

    Returns:
        str: The authenticated connection string
    """
    parts = _split_srv(srv_base)
    if "@" in parts.netloc:
        raise UriAlreadyHasCredentials("Connection string already contains credentials")

    userinfo = f"{quote(username, safe='')}:{quote(password, safe='')}"
    netloc = f"{userinfo}@{parts.netloc}"

    path = parts.path
    if path.strip("/") == "":
        path = "/" + (database or DEFAULT_DATABASE)

    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True)
             if key.lower() != "authsource"]
    query.append(("authSource", AUTH_SOURCE))
    for key, value in (extra_query or {}).items():
        if key.lower() in RESERVED_QUERY_KEYS:
            continue
        query = [(k, v) for k, v in query if k != key]
        query.append((key, value))

    return urlunsplit((parts.scheme, netloc, path, urlencode(query), parts.fragment))


def mask(uri):
    """Replace the password in a connection string with a fixed token."""
    if not uri:
        return uri
    scheme_sep = uri.find("://")
    if scheme_sep == -1:
        return uri
    start = scheme_sep + 3
    at = uri.find("@", start)
    # The host list ends at the first '/' or '?', credentials can't span it
    end_of_hosts = min(i for i in (uri.find("/", start), uri.find("?", start), len(uri)) if i != -1)
    if at == -1 or at > end_of_hosts:
        return uri
    userinfo = uri[start:at]
    user, sep, _ = userinfo.partition(":")
    if not sep:
        return uri
    return f"{uri[:start]}{user}:{MASK_TOKEN}{uri[at:]}"
