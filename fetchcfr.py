import os

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

CFR_URL = "https://www.benf.org/other/cfr/cfr-0.152.jar"
REQUEST_TIMEOUT = 30
CHUNK_SIZE = 64 * 1024


class FetchError(Exception):
    pass


def get_session():
    session = requests.Session()
    retry_strategy = Retry(
        total=3, backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["HEAD", "GET"]
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def fetch_cfr(dest, url=CFR_URL, session=None):
    """Download the CFR jar to dest unless it is already there."""
    if os.path.exists(dest):
        return dest

    session = session or get_session()
    part = dest + ".part"
    print(f"[INFO] downloading CFR decompiler: {url}")
    try:
        with session.get(url, timeout=REQUEST_TIMEOUT, stream=True) as response:
            response.raise_for_status()
            parent = os.path.dirname(dest)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(part, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        os.replace(part, dest)
    except (requests.RequestException, OSError) as e:
        if os.path.exists(part):
            os.remove(part)
        raise FetchError(f"unable to download {url}: {e}") from e

    print(f"[INFO] CFR decompiler saved to: {dest}")
    return dest
