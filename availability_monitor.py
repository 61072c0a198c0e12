# Standard library imports and third-party dependencies
# asyncio drives the probe fan-out, aiohttp issues the HTTP requests
import re
import sys
import json
import time
import asyncio
import logging
import argparse
import threading
from enum import Enum
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import aiohttp
import yaml
from yarl import URL

logger = logging.getLogger(__name__)

# Seconds between two report emissions
DEFAULT_PERIOD = 15.0
# Upper bound for one probe, from request start to response headers
DEFAULT_REQUEST_TIMEOUT = 0.5

# RFC 7230 token, the only legal shape for a method or a header name
_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


class MonitorError(Exception):
    """Base class for every error raised by the monitor."""


class ConfigError(MonitorError):
    """The endpoint file could not be read or does not describe endpoints."""


class RequestConstructionError(MonitorError):
    """An endpoint cannot be turned into an HTTP request."""


def extract_domain(url: str) -> str:
    """
    Returns the domain key used to group endpoints: the host without scheme,
    path or port.

    Example: http://api.example.com:8080/path -> api.example.com

    The URL is only split, never validated, so malformed input gives back
    whatever substring falls out. IPv6 literals ("[::1]:8080") and URLs with
    credentials ("user:pw@host") are not supported and produce a wrong key;
    see has_unsupported_authority().
    """
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            url = url[len(prefix):]
            break
    host = url.split("/", 1)[0]
    return host.split(":", 1)[0]


def has_unsupported_authority(url: str) -> bool:
    """True when extract_domain() cannot derive a meaningful key for url."""
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            url = url[len(prefix):]
            break
    authority = url.split("/", 1)[0]
    return "@" in authority or "[" in authority


@dataclass(frozen=True)
class EndpointConfig:
    """
    Represents the configuration for a single HTTP endpoint.

    Instances are read-only once loaded. The loader fills in a GET method when
    the file leaves it out; an empty method or url still reaching the probe
    makes that probe unbuildable.
    """
    name: str
    url: str
    method: str = "GET"
    headers: Optional[Dict[str, str]] = None
    body: Optional[str] = None

    def get_domain(self) -> str:
        return extract_domain(self.url)


@dataclass(frozen=True)
class MonitorSettings:
    """Timing knobs of the monitor. Defaults are the production values."""
    period: float = DEFAULT_PERIOD
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT


class ConfigurationParser:
    """
    Handles the parsing of YAML configuration files into structured endpoint configs.

    The file must hold a YAML list; each item needs a name and a url, and may
    carry method, headers and body. A body given as a YAML mapping or list is
    serialized to JSON. Any problem raises ConfigError, leaving the decision to
    exit to the caller.
    """
    def __init__(self, config_path: str):
        self.config_path = config_path

    def parse_config(self) -> List[EndpointConfig]:
        try:
            with open(self.config_path, "r", encoding="utf-8") as file:
                config_data = yaml.safe_load(file)
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {self.config_path}")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot read configuration file {self.config_path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing YAML file: {e}")

        if not isinstance(config_data, list):
            raise ConfigError("Configuration must be a YAML list")

        return [self._parse_endpoint(index, item) for index, item in enumerate(config_data)]

    def _parse_endpoint(self, index: int, item) -> EndpointConfig:
        if not isinstance(item, dict):
            raise ConfigError(f"Endpoint #{index} must be a mapping")
        for field in ("name", "url"):
            if field not in item:
                raise ConfigError(f"Endpoint #{index} is missing required field '{field}'")
            if not isinstance(item[field], str):
                raise ConfigError(f"Endpoint #{index}: '{field}' must be a string")

        method = item.get("method", "GET")
        if not isinstance(method, str):
            raise ConfigError(f"Endpoint #{index}: 'method' must be a string")

        headers = item.get("headers")
        if headers is not None:
            if not isinstance(headers, dict):
                raise ConfigError(f"Endpoint #{index}: 'headers' must be a mapping")
            headers = {str(key): str(value) for key, value in headers.items()}

        body = item.get("body")
        if isinstance(body, (dict, list)):
            body = json.dumps(body)
        elif body is not None and not isinstance(body, str):
            raise ConfigError(f"Endpoint #{index}: 'body' must be a string")

        return EndpointConfig(
            name=item["name"],
            url=item["url"],
            method=method,
            headers=headers,
            body=body,
        )


@dataclass
class DomainStats:
    """Cumulative probe counters of one domain. success never exceeds total."""
    success: int = 0
    total: int = 0

    @property
    def percentage(self) -> Optional[int]:
        """
        Availability rounded half away from zero, or None before the first
        completed probe. Integer arithmetic keeps 12.5 -> 13.
        """
        if self.total == 0:
            return None
        return (200 * self.success + self.total) // (2 * self.total)


class StatsRegistry:
    """
    Maps domain keys to their DomainStats for the whole process lifetime.

    Entries are created up front for every configured domain and never
    removed or reset. A single lock guards every read and write, so probes
    may record results from asyncio tasks or from threads.
    """
    def __init__(self, domains=()):
        self._lock = threading.Lock()
        self._stats: Dict[str, DomainStats] = {}
        for domain in domains:
            self.track(domain)

    @classmethod
    def for_endpoints(cls, endpoints: List[EndpointConfig]) -> "StatsRegistry":
        return cls(endpoint.get_domain() for endpoint in endpoints)

    def track(self, domain: str) -> None:
        with self._lock:
            self._stats.setdefault(domain, DomainStats())

    def increment(self, domain: str, succeeded: bool) -> None:
        # Both counters move in one critical section.
        with self._lock:
            stats = self._stats.setdefault(domain, DomainStats())
            stats.total += 1
            if succeeded:
                stats.success += 1

    def snapshot(self) -> Dict[str, DomainStats]:
        """Copies of every entry, each one internally consistent."""
        with self._lock:
            return {
                domain: DomainStats(stats.success, stats.total)
                for domain, stats in self._stats.items()
            }

    def availability(self) -> Dict[str, int]:
        """
        Percentages per domain for reporting. Domains without any completed
        probe are left out instead of dividing by zero.
        """
        return {
            domain: stats.percentage
            for domain, stats in self.snapshot().items()
            if stats.total > 0
        }

    def __contains__(self, domain: str) -> bool:
        with self._lock:
            return domain in self._stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._stats)


class Outcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DROPPED = "dropped"


class FailureReason(Enum):
    TRANSPORT_ERROR = "transport-error"
    TIMEOUT = "timeout"
    NON_2XX_STATUS = "non-2xx-status"


@dataclass
class ProbeResult:
    """
    Stores the result of a single probe.

    reason is set only for FAILURE, status_code whenever a response arrived.
    Dropped probes never reached the network and carry the construction error
    in detail.
    """
    endpoint_name: str
    domain: str
    outcome: Outcome
    reason: Optional[FailureReason] = None
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    detail: str = ""

    @property
    def is_up(self) -> bool:
        return self.outcome is Outcome.SUCCESS


@dataclass(frozen=True)
class PreparedRequest:
    method: str
    url: URL
    headers: Dict[str, str]
    data: Optional[bytes]


def build_request(endpoint: EndpointConfig) -> PreparedRequest:
    """
    Turns an endpoint into the pieces of an HTTP request.

    Raises RequestConstructionError for an empty or malformed method, an empty
    or unparseable url, and a body that cannot be encoded as UTF-8. Headers
    are passed through as configured; see invalid_header().
    """
    method = endpoint.method
    if not method or not _TOKEN_RE.match(method):
        raise RequestConstructionError(f"invalid HTTP method {method!r}")

    if not endpoint.url:
        raise RequestConstructionError("missing url")
    try:
        url = URL(endpoint.url)
    except (ValueError, TypeError) as e:
        raise RequestConstructionError(f"malformed url {endpoint.url!r}: {e}")

    headers = dict(endpoint.headers or {})

    data = None
    if endpoint.body is not None:
        try:
            data = endpoint.body.encode("utf-8")
        except UnicodeEncodeError as e:
            raise RequestConstructionError(f"body cannot be encoded: {e}")

    return PreparedRequest(method=method.upper(), url=url, headers=headers, data=data)


def invalid_header(headers: Dict[str, str]) -> Optional[str]:
    """Describes the first header that cannot be written on the wire, if any."""
    for key, value in headers.items():
        if not _TOKEN_RE.match(key):
            return f"invalid header name {key!r}"
        if "\r" in value or "\n" in value:
            return f"invalid value for header {key!r}"
    return None


class ProbeExecutor:
    """
    Performs one request for one endpoint and records its outcome.

    The aiohttp total timeout covers the whole request, DNS resolution and
    connection setup included, so a probe never outlives request_timeout by
    more than scheduling overhead. Successes and failures update the registry
    once; dropped probes leave it untouched.
    """
    def __init__(self, registry: StatsRegistry,
                 request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.registry = registry
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)

    async def probe(self, session: aiohttp.ClientSession,
                    endpoint: EndpointConfig) -> ProbeResult:
        domain = endpoint.get_domain()
        try:
            request = build_request(endpoint)
        except RequestConstructionError as e:
            return self._dropped(endpoint, domain, e)

        start_time = time.monotonic()
        header_error = invalid_header(request.headers)
        if header_error:
            # An unwritable header fails the send like any transport error.
            result = self._failure(endpoint, domain, FailureReason.TRANSPORT_ERROR,
                                   start_time, detail=header_error)
        else:
            try:
                result = await self._send(session, endpoint, domain, request, start_time)
            except ValueError as e:
                # aiohttp refused to assemble the request before sending it
                return self._dropped(endpoint, domain, e)

        self.registry.increment(domain, result.is_up)
        logger.debug("Probe %s -> %s %s", endpoint.name, result.outcome.value, result.detail)
        return result

    async def _send(self, session: aiohttp.ClientSession, endpoint: EndpointConfig,
                    domain: str, request: PreparedRequest,
                    start_time: float) -> ProbeResult:
        try:
            async with session.request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                data=request.data,
                timeout=self.timeout,
            ) as response:
                status = response.status
        except asyncio.TimeoutError:
            return self._failure(endpoint, domain, FailureReason.TIMEOUT, start_time,
                                 detail="no response in time")
        except (aiohttp.ClientError, OSError) as e:
            return self._failure(endpoint, domain, FailureReason.TRANSPORT_ERROR,
                                 start_time, detail=str(e) or type(e).__name__)

        elapsed_ms = (time.monotonic() - start_time) * 1000
        if 200 <= status < 300:
            return ProbeResult(endpoint.name, domain, Outcome.SUCCESS,
                               status_code=status, response_time_ms=elapsed_ms)
        return ProbeResult(endpoint.name, domain, Outcome.FAILURE,
                           reason=FailureReason.NON_2XX_STATUS,
                           status_code=status, response_time_ms=elapsed_ms,
                           detail=f"HTTP {status}")

    @staticmethod
    def _dropped(endpoint: EndpointConfig, domain: str, error: Exception) -> ProbeResult:
        logger.warning("Dropping probe of %s (%s): %s", endpoint.name, endpoint.url, error)
        return ProbeResult(endpoint.name, domain, Outcome.DROPPED, detail=str(error))

    @staticmethod
    def _failure(endpoint: EndpointConfig, domain: str, reason: FailureReason,
                 start_time: float, detail: str) -> ProbeResult:
        return ProbeResult(
            endpoint.name, domain, Outcome.FAILURE, reason=reason,
            response_time_ms=(time.monotonic() - start_time) * 1000,
            detail=detail,
        )


class CycleDispatcher:
    """
    Probes every endpoint concurrently and waits for all of them.

    A cycle shares one ClientSession whose connector has no connection limit,
    so the fan-out is never queued behind the pool. gather() collects
    exceptions instead of cancelling siblings; an unexpected error is raised
    again only once every probe of the cycle has finished.
    """
    def __init__(self, executor: ProbeExecutor):
        self.executor = executor

    async def run_cycle(self, endpoints: List[EndpointConfig]) -> List[ProbeResult]:
        connector = aiohttp.TCPConnector(limit=0)
        async with aiohttp.ClientSession(connector=connector) as session:
            tasks = [
                self.executor.probe(session, endpoint)
                for endpoint in endpoints
            ]
            results = await asyncio.gather(*tasks, return_exceptions=True)

        for result in results:
            if isinstance(result, BaseException):
                raise result

        logger.debug(
            "Cycle finished: %d probes, %d up, %d dropped",
            len(results),
            sum(1 for r in results if r.outcome is Outcome.SUCCESS),
            sum(1 for r in results if r.outcome is Outcome.DROPPED),
        )
        return results


Reporter = Callable[[Dict[str, int]], None]


class ConsoleReporter:
    """Prints one availability line per domain to stdout."""
    def __init__(self, stream=None):
        self.stream = stream

    def __call__(self, availability: Dict[str, int]) -> None:
        for domain, percentage in availability.items():
            print(f"{domain} has {percentage}% availability",
                  file=self.stream or sys.stdout, flush=True)


class MonitoringService:
    """
    Orchestrates the overall monitoring process.

    Each cycle probes every endpoint, waits for the next absolute deadline and
    then reports. Deadlines advance by exactly one period from the previous
    deadline, so reports stay on a fixed cadence however long a cycle takes,
    as long as it stays under the period. An overrun cycle reports at once
    without skipping. stop() lets the loop finish after the current report.

    The first deadline is the start time, so the first report follows the
    first cycle and the gap to the second report is one period minus that
    first cycle's latency. From the second report on, reports are exactly one
    period apart.
    """
    def __init__(self, endpoints: List[EndpointConfig],
                 settings: Optional[MonitorSettings] = None,
                 reporter: Optional[Reporter] = None,
                 registry: Optional[StatsRegistry] = None):
        self.endpoints = endpoints
        self.settings = settings or MonitorSettings()
        self.reporter = reporter or ConsoleReporter()
        self.registry = registry if registry is not None else StatsRegistry()
        for endpoint in endpoints:
            self.registry.track(endpoint.get_domain())
        self.dispatcher = CycleDispatcher(
            ProbeExecutor(self.registry, self.settings.request_timeout)
        )
        self.running = False

        for endpoint in endpoints:
            if has_unsupported_authority(endpoint.url):
                logger.warning(
                    "Endpoint %s uses an IPv6 or credentialed URL; "
                    "its domain key %r is unreliable", endpoint.name, endpoint.get_domain())

    @classmethod
    def from_config_file(cls, config_path: str, **kwargs) -> "MonitoringService":
        return cls(ConfigurationParser(config_path).parse_config(), **kwargs)

    async def run_cycle(self) -> List[ProbeResult]:
        return await self.dispatcher.run_cycle(self.endpoints)

    def report(self) -> None:
        self.reporter(self.registry.availability())

    async def run(self):
        loop = asyncio.get_running_loop()
        self.running = True
        next_deadline = loop.time()
        logger.info("Monitoring %d endpoints across %d domains every %ss",
                    len(self.endpoints), len(self.registry), self.settings.period)

        while self.running:
            await self.run_cycle()
            delay = next_deadline - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            else:
                logger.debug("Cycle overran its deadline by %.3fs", -delay)
            self.report()
            next_deadline += self.settings.period

    def stop(self):
        self.running = False


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="availability-monitor",
        description="Probe HTTP endpoints and report availability per domain",
    )
    parser.add_argument("config", help="Path to YAML configuration file")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Diagnostics verbosity on stderr (default: WARNING)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Application entry point. Configuration problems end the process with
    status 1 before any probe is sent.
    """
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    try:
        service = MonitoringService.from_config_file(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        print("\nStopping monitoring service...", file=sys.stderr)
        service.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
