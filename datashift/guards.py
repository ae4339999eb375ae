"""Dry-run guards that keep a shift's side effects inside the process.

Each optional subsystem is a capability: an ``apply`` that switches it into a
non-executing mode and returns a token, and a ``restore`` that takes the token
back. ``default_registry()`` only registers capabilities whose library is
actually importable, so the guard never has to branch on what is installed.
"""
from collections.abc import Callable, Generator, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
import importlib.util
import logging
import re
import smtplib
import socket
import threading
from unittest import mock
from urllib.parse import urlsplit
import uuid

from requests.adapters import HTTPAdapter
import responses
import urllib3.util.connection

from datashift.config import AllowedHost
from datashift.errors import ExternalRequestNotAllowedError


logger = logging.getLogger(__name__)

_HTTP_METHODS = (
    responses.GET,
    responses.POST,
    responses.PUT,
    responses.PATCH,
    responses.DELETE,
    responses.HEAD,
    responses.OPTIONS,
)
_ANY_URL = re.compile(r".*")


@dataclass(frozen=True)
class GuardContext:
    allowed_hosts: tuple[AllowedHost, ...] = ()


@dataclass(frozen=True)
class Capability:
    name: str
    apply: Callable[[GuardContext], object]
    restore: Callable[[object], None]


class GuardRegistry:
    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(self, name: str, apply: Callable[[GuardContext], object], restore: Callable[[object], None]) -> None:
        self._capabilities[name] = Capability(name=name, apply=apply, restore=restore)

    @property
    def names(self) -> list[str]:
        return list(self._capabilities)

    def __iter__(self) -> Iterator[Capability]:
        return iter(list(self._capabilities.values()))


def host_allowed(host: str | None, allowed: tuple[AllowedHost, ...]) -> bool:
    if not host:
        return False
    host = host.lower()
    for entry in allowed:
        if isinstance(entry, re.Pattern):
            if entry.search(host):
                return True
        elif entry.strip().lower() == host:
            return True
    return False


# --- http (requests, intercepted with responses) ---


def _apply_http(context: GuardContext) -> responses.RequestsMock:
    previous_send = HTTPAdapter.send

    def _host_matcher(expect_allowed: bool):
        def matcher(request) -> tuple[bool, str]:
            host = urlsplit(request.url).hostname
            allowed = host_allowed(host, context.allowed_hosts)
            if allowed == expect_allowed:
                return True, ""
            return False, f"host {host} allowed={allowed}"

        return matcher

    def _refuse(request):
        raise ExternalRequestNotAllowedError(attempted_host=urlsplit(request.url).hostname)

    # Allowed hosts go to whatever transport was active before, so an outer mock keeps serving them.
    requests_mock = responses.RequestsMock(assert_all_requests_are_fired=False, real_adapter_send=previous_send)
    for method in _HTTP_METHODS:
        requests_mock.add(responses.PassthroughResponse(method, _ANY_URL, match=[_host_matcher(True)]))
        requests_mock.add_callback(method, _ANY_URL, callback=_refuse, match=[_host_matcher(False)])
    requests_mock.start()
    return requests_mock


def _restore_http(requests_mock: responses.RequestsMock) -> None:
    requests_mock.stop()
    requests_mock.reset()


# --- network (connections opened by any other client: urllib, http.client, httpx) ---

_INET_FAMILIES = (socket.AF_INET, socket.AF_INET6)


def _apply_network(context: GuardContext) -> list[object]:
    # Set while an allowed connection by name is being opened, so its own connect() to the resolved address passes.
    passage = threading.local()

    def _check(host) -> None:
        if isinstance(host, bytes):
            host = host.decode("ascii", "replace")
        if not host_allowed(host, context.allowed_hosts):
            raise ExternalRequestNotAllowedError(attempted_host=host)

    def _by_name(real):
        def create_connection(address, *args, **kwargs):
            _check(address[0])
            passage.depth = getattr(passage, "depth", 0) + 1
            try:
                return real(address, *args, **kwargs)
            finally:
                passage.depth -= 1

        return create_connection

    def _by_address(real):
        def connect(self, address):
            if self.family in _INET_FAMILIES and not getattr(passage, "depth", 0):
                _check(address[0])
            return real(self, address)

        return connect

    patchers = [
        mock.patch.object(socket, "create_connection", _by_name(socket.create_connection)),
        mock.patch.object(
            urllib3.util.connection, "create_connection", _by_name(urllib3.util.connection.create_connection)
        ),
        mock.patch.object(socket.socket, "connect", _by_address(socket.socket.connect)),
        mock.patch.object(socket.socket, "connect_ex", _by_address(socket.socket.connect_ex)),
    ]
    for patcher in patchers:
        patcher.start()
    return patchers


def _restore_network(patchers: list[object]) -> None:
    for patcher in reversed(patchers):
        patcher.stop()


# --- smtp (smtplib deliveries disabled) ---


@dataclass
class PatchToken:
    patcher: object
    suppressed: list[object] = field(default_factory=list)


def _apply_smtp(context: GuardContext) -> PatchToken:
    suppressed: list[object] = []
    reply = b"datashift dry run: delivery disabled"

    def _connect(self, host="localhost", port=0, source_address=None):
        return 220, reply

    def _hello(self, name=""):
        return 250, reply

    def _starttls(self, *args, **kwargs):
        return 220, reply

    def _login(self, user, password, *, initial_response_ok=True):
        return 235, reply

    def _sendmail(self, from_addr, to_addrs, msg, mail_options=(), rcpt_options=()):
        suppressed.append((from_addr, to_addrs))
        return {}

    def _send_message(self, msg, from_addr=None, to_addrs=None, mail_options=(), rcpt_options=()):
        suppressed.append((from_addr or msg.get("From"), to_addrs or msg.get_all("To")))
        return {}

    def _quit(self):
        self.close()
        return 221, reply

    patcher = mock.patch.multiple(
        smtplib.SMTP,
        connect=_connect,
        ehlo=_hello,
        helo=_hello,
        starttls=_starttls,
        login=_login,
        sendmail=_sendmail,
        send_message=_send_message,
        quit=_quit,
    )
    patcher.start()
    return PatchToken(patcher=patcher, suppressed=suppressed)


def _restore_patch(token: PatchToken) -> None:
    token.patcher.stop()
    if token.suppressed:
        logger.info("suppressed side effects during dry run", extra={"suppressed": len(token.suppressed)})


# --- celery (task enqueue recorded, never sent to a broker) ---


def _apply_celery(context: GuardContext) -> PatchToken:
    from celery import states
    from celery.app.task import Task
    from celery.result import EagerResult

    enqueued: list[object] = []

    def _apply_async(self, args=None, kwargs=None, task_id=None, *rest, **options):
        task_id = task_id or str(uuid.uuid4())
        enqueued.append((self.name, args, kwargs))
        return EagerResult(task_id, None, states.PENDING, name=self.name)

    patcher = mock.patch.object(Task, "apply_async", _apply_async)
    patcher.start()
    return PatchToken(patcher=patcher, suppressed=enqueued)


def default_registry() -> GuardRegistry:
    registry = GuardRegistry()
    registry.register("http", _apply_http, _restore_http)
    registry.register("network", _apply_network, _restore_network)
    registry.register("smtp", _apply_smtp, _restore_patch)
    if importlib.util.find_spec("celery") is not None:
        registry.register("celery", _apply_celery, _restore_patch)
    return registry


def restore_guards(applied: list[tuple[Capability, object]]) -> None:
    """Restore in reverse order; every capability gets its restore even if another one fails."""
    failures: list[Exception] = []
    while applied:
        capability, token = applied.pop()
        try:
            capability.restore(token)
        except Exception as exc:
            logger.exception("failed to restore side-effect guard", extra={"capability": capability.name})
            failures.append(exc)
    if failures:
        raise failures[0]


@contextmanager
def side_effect_guard(
    registry: GuardRegistry, *, allowed_hosts: tuple[AllowedHost, ...] = ()
) -> Generator[list[tuple[Capability, object]], None, None]:
    context = GuardContext(allowed_hosts=tuple(allowed_hosts))
    applied: list[tuple[Capability, object]] = []
    try:
        for capability in registry:
            applied.append((capability, capability.apply(context)))
        logger.debug("side-effect guards applied", extra={"capabilities": [c.name for c, _ in applied]})
        yield applied
    finally:
        restore_guards(applied)
