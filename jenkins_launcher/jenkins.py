"""
Thin client for the parts of the Jenkins HTTP API used by the launcher.
"""

import functools
import json
import logging
import os
import platform
import random
import re
import ssl
import threading
import time
import xml.etree.ElementTree as ET
from base64 import b64encode
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import Any, List, NamedTuple, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from . import __version__
from .errors import JenkinsError

logger = logging.getLogger("launcher.jenkins")
security_logger = logging.getLogger("launcher.security")

CRUMB_URI = "crumbIssuer/api/xml?xpath=concat(//crumbRequestField,%22:%22,//crumb)"
NODE_STATUS_URI = "computer/{name}/api/xml"
NODE_CONFIG_URI = "computer/{name}/config.xml"
NODE_PAGE_URI = "computer/{name}/"
NODE_JNLP_URI = "computer/{name}/slave-agent.jnlp"
NODE_SCRIPT_URI = "computer/{name}/scriptText"
COMPUTERS_URI = "computer/api/xml"
CREATE_NODE_URI = "computer/doCreateItem"
JNLP_LISTENER_URI = "tcpSlaveAgentListener/"
CLIENT_JAR_URI = "jnlpJars/slave.jar"

JNLP_PORT_HEADERS = ("X-Jenkins-JNLP-Port", "X-Hudson-JNLP-Port")

EXPECTED_NODE_TYPE = "hudson.slaves.DumbSlave$DescriptorImpl"
EXPECTED_NODE_LAUNCHER = "hudson.slaves.JNLPLauncher"

FULL_GC_SCRIPT = "3.times{ System.gc() }"

SECRET_PATTERN = re.compile(r'<pre>.*-secret ([A-F0-9]+)[^A-F0-9]*</pre>', re.IGNORECASE | re.DOTALL)


class Response(NamedTuple):
    status: int
    headers: Any
    body: bytes


class NodeStatus(NamedTuple):
    """State of a node as reported by Jenkins."""
    name: str
    offline: bool
    idle: bool
    temporarily_offline: bool


class NodeConfig(NamedTuple):
    name: str
    remote_fs: str


def extract_secret(content: bytes) -> str:
    """Extracts the JNLP secret from the HTML of a node's page."""
    text = content.decode("utf-8", errors="replace")
    if match := SECRET_PATTERN.search(text):
        return match.group(1)
    return ""


class RetryPolicy:
    """
    Class-based decorator for network resilience.
    It inspects the instance ('self') to find configuration.
    """

    def __init__(self, exceptions=(URLError, HTTPError)):
        self.exceptions = exceptions

    def __call__(self, func):
        @functools.wraps(func)
        def wrapper(obj, *args, **kwargs):
            config = getattr(obj, 'config', None)

            if config and hasattr(config, 'api_retries'):
                max_retries = config.api_retries
                backoff_factor = config.api_backoff
            else:
                max_retries = 3
                backoff_factor = 1.5

            delay = 1.0
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return func(obj, *args, **kwargs)
                except self.exceptions as e:
                    last_exception = e

                    # Fail fast on 4xx client errors
                    if isinstance(e, HTTPError) and 400 <= e.code < 500:
                        raise e

                    if attempt < max_retries:
                        sleep_time = delay * (1 + random.random() * 0.1)
                        logger.warning(f"Network error: {e}. Retrying in {sleep_time:.2f}s (Attempt {attempt + 1}/{max_retries})...")

                        time.sleep(sleep_time)
                        delay *= backoff_factor

            if last_exception:
                raise last_exception

        return wrapper


class JenkinsClient:
    """
    Sends requests to the Jenkins server configured in 'config.ci_host_url'.
    The URL is read on every request, as the SSH tunnel may rewrite it.
    """

    def __init__(self, config):
        self.config = config
        self._crumb_lock = threading.Lock()
        self._crumb: Optional[Tuple[str, str]] = None
        self._crumb_loaded = False

    # --- Plumbing ---

    def url_for(self, path: str) -> str:
        return self.config.ci_host_url.rstrip("/") + "/" + path.lstrip("/")

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.config.ci_accept_any_cert:
            return None
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context

    def _build_request(self, path: str, method: str, data: Optional[bytes], headers: Optional[dict]) -> Request:
        req = Request(self.url_for(path), data=data, method=method)

        user_agent = f"JenkinsClientLauncher/{__version__} (Python {platform.python_version()}; {platform.system()})"
        req.add_header("User-Agent", user_agent)

        if self.config.ci_username and self.config.ci_password:
            token = b64encode(f"{self.config.ci_username}:{self.config.ci_password}".encode()).decode("ascii")
            req.add_header("Authorization", f"Basic {token}")

        for name, value in (headers or {}).items():
            req.add_header(name, value)

        if method != "GET" and (crumb := self.crumb()):
            req.add_header(*crumb)

        return req

    def _send_request(self, req: Request) -> Response:
        try:
            with urlopen(req, timeout=self.config.http_timeout, context=self._ssl_context()) as resp:
                return Response(resp.status, resp.headers, resp.read())
        except HTTPError as e:
            if e.code == 304:
                return Response(304, e.headers, b"")
            raise

    @RetryPolicy()
    def _send_request_with_retry(self, req: Request) -> Response:
        return self._send_request(req)

    def request(self, path: str, method: str = "GET", data: Optional[bytes] = None,
                headers: Optional[dict] = None, retry: bool = False) -> Response:
        """
        Unified handler for API requests.
        Handles all generic HTTP/Network errors by raising JenkinsError.
        Only idempotent set-up calls should pass retry=True.
        """
        req = self._build_request(path, method, data, headers)
        try:
            if retry:
                return self._send_request_with_retry(req)
            return self._send_request(req)
        except HTTPError as e:
            if e.code == 401:
                raise JenkinsError(f"Authentication against {req.full_url} failed (401 Unauthorized).", e.code)
            elif e.code == 404:
                raise JenkinsError(f"Resource not found at {req.full_url} (404).", e.code)
            raise JenkinsError(f"Jenkins API Error: {e.code} {e.reason}", e.code)
        except URLError as e:
            raise JenkinsError(f"Network error connecting to Jenkins: {e.reason}")
        except OSError as e:
            raise JenkinsError(f"Network error connecting to Jenkins: {e}")

    def get(self, path: str, headers: Optional[dict] = None, retry: bool = False) -> Response:
        return self.request(path, headers=headers, retry=retry)

    def post(self, path: str, data: bytes = b"", content_type: str = "application/x-www-form-urlencoded",
             retry: bool = False) -> Response:
        return self.request(path, method="POST", data=data, headers={"Content-Type": content_type}, retry=retry)

    def crumb(self) -> Optional[Tuple[str, str]]:
        """Returns the CSRF crumb header, fetched once per client."""
        with self._crumb_lock:
            if self._crumb_loaded:
                return self._crumb
            self._crumb_loaded = True

        crumb = None
        try:
            req = self._build_request(CRUMB_URI, "GET", None, None)
            body = self._send_request(req).body.decode("utf-8").strip()
            header, sep, value = body.partition(":")
            if sep and header and value:
                crumb = (header, value)
                security_logger.info(f"{header}: {value}")
        except (URLError, OSError, UnicodeDecodeError) as e:
            security_logger.debug(f"No CSRF crumb available: {e}")

        with self._crumb_lock:
            self._crumb = crumb
        return crumb

    @staticmethod
    def _parse_xml(body: bytes, url: str) -> ET.Element:
        try:
            return ET.fromstring(body)
        except ET.ParseError as e:
            raise JenkinsError(f"Invalid XML response from {url}: {e}")

    @staticmethod
    def _is_true(text: Optional[str]) -> bool:
        return (text or "").strip().lower() == "true"

    # --- Operations ---

    def get_node_status(self, name: str) -> NodeStatus:
        path = NODE_STATUS_URI.format(name=quote(name))
        root = self._parse_xml(self.get(path).body, path)
        return NodeStatus(
            name=root.findtext("displayName", name),
            offline=self._is_true(root.findtext("offline")),
            idle=self._is_true(root.findtext("idle")),
            temporarily_offline=self._is_true(root.findtext("temporarilyOffline")),
        )

    def get_node_config_xml(self, name: str) -> bytes:
        return self.get(NODE_CONFIG_URI.format(name=quote(name)), retry=True).body

    def post_node_config_xml(self, name: str, content: bytes) -> Response:
        return self.post(NODE_CONFIG_URI.format(name=quote(name)), content, content_type="application/xml")

    def get_node_config(self, name: str) -> NodeConfig:
        root = self._parse_xml(self.get_node_config_xml(name), NODE_CONFIG_URI.format(name=name))
        return NodeConfig(name=root.findtext("name", name), remote_fs=root.findtext("remoteFS", "").strip())

    def get_all_node_names(self) -> List[str]:
        root = self._parse_xml(self.get(COMPUTERS_URI, retry=True).body, COMPUTERS_URI)
        return [e.text for e in root.findall("computer/displayName") if e.text]

    def create_node(self, name: str, remote_fs: str) -> None:
        """Creates a permanent JNLP node that is exclusive to tied jobs."""
        payload = {
            "name": name,
            "nodeDescription": f"JCL auto generated node '{name}'.",
            "numExecutors": 1,
            "remoteFS": remote_fs,
            "labelString": f"JCL {platform.system().lower()} {platform.machine().lower()}",
            "mode": "EXCLUSIVE",
            "type": EXPECTED_NODE_TYPE,
            "retentionStrategy": {"stapler-class": "hudson.slaves.RetentionStrategy$Always"},
            "nodeProperties": {"stapler-class-bag": True},
            "launcher": {"stapler-class": EXPECTED_NODE_LAUNCHER},
        }
        params = urlencode({"name": name, "type": EXPECTED_NODE_TYPE, "json": json.dumps(payload)})
        self.post(CREATE_NODE_URI, params.encode("utf-8"))

    def get_jnlp_port(self) -> int:
        """Reads the TCP port of the JNLP listener from the response headers."""
        headers = self.get(JNLP_LISTENER_URI, retry=True).headers
        for name in JNLP_PORT_HEADERS:
            if (value := headers.get(name)) and value.strip().isdigit():
                return int(value)
        raise JenkinsError(f"Jenkins did not report a JNLP port at {self.url_for(JNLP_LISTENER_URI)}.")

    def get_secret(self, name: str) -> str:
        """Returns the JNLP secret of the node, or an empty string when not shown."""
        return extract_secret(self.get(NODE_PAGE_URI.format(name=quote(name)), retry=True).body)

    def get_agent_jnlp(self, name: str) -> bytes:
        return self.get(NODE_JNLP_URI.format(name=quote(name)), retry=True).body

    def download_client_jar(self, target: Path) -> bool:
        """
        Downloads the client jar into 'target' unless the local copy is up to date.
        Returns True when a new file was written.
        """
        target = Path(target)
        headers = {}
        if target.exists():
            headers["If-Modified-Since"] = formatdate(target.stat().st_mtime, usegmt=True)

        response = self.get(CLIENT_JAR_URI, headers=headers, retry=True)
        if response.status == 304:
            return False

        temporary = target.with_name(f"~{target.name}.download")
        try:
            temporary.write_bytes(response.body)
            os.replace(temporary, target)
            if last_modified := response.headers.get("Last-Modified"):
                timestamp = parsedate_to_datetime(last_modified).timestamp()
                os.utime(target, (timestamp, timestamp))
        except (OSError, TypeError, ValueError) as e:
            temporary.unlink(missing_ok=True)
            raise JenkinsError(f"Failed to store {target}: {e}")
        return True

    def invoke_full_gc(self, name: str) -> None:
        data = urlencode({"script": FULL_GC_SCRIPT}).encode("utf-8")
        self.post(NODE_SCRIPT_URI.format(name=quote(name)), data)
