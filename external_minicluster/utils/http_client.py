"""HTTP client sessions."""

import requests

USER_AGENT = f"external-minicluster (requests/{requests.__version__})"


def new_session() -> requests.Session:
    """Create a session object.

    One session is shared by all calls made while a single cluster is running, so connections
    to the coordinators are pooled.
    """
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    return session
