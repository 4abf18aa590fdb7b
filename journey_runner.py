# journey_runner.py

import asyncio
import aiohttp
import logging
import math
import os
import random
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

# --- Logging Setup ---
logger = logging.getLogger("JourneyRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False # Prevent duplicate logs if root logger is configured

# --- Exports for container_control ---
__all__ = [
    "logger", "StartRequest", "RunConfig", "JourneyDefinition", "JourneyRunner",
    "ResultAggregator", "RunSummary", "ConfigurationError",
]

TRACING_HEADER = "X-dynaTrace"
JOURNEY_TRANSACTION = "Full_Customer_Journey"
COMPLETION_EVENT_NAME = "Journey_Completion"

# ---------------------------
# Errors
# ---------------------------
class JourneyRunnerError(Exception):
    """Base class for all journey runner errors."""


class ConfigurationError(JourneyRunnerError):
    """Invalid run configuration or journey definition. Fatal before any worker starts."""


class TransportError(JourneyRunnerError):
    """A request could not be sent or no response was received, even after retries."""


class CompletionEventError(JourneyRunnerError):
    """The trailing journey completion event could not be delivered."""


# ---------------------------
# Journey Definition Models
# ---------------------------
class SubStep(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    substepName: str = Field(..., description="Descriptive name of the sub-step")
    duration: int = Field(default=0, ge=0, description="Descriptive duration of the sub-step (ms)")


class StepDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    stepNumber: int = Field(
        ...,
        ge=1,
        validation_alias=AliasChoices("stepNumber", "stepIndex"),
        description="1-based position of the step in the journey",
    )
    stepName: str = Field(..., min_length=1)
    serviceName: str = Field(..., min_length=1)
    description: str = Field(default="")
    estimatedDuration: int = Field(default=0, ge=0, description="Estimated duration of the step (ms)")
    substeps: List[SubStep] = Field(default_factory=list)
    thinkTimeMs: Optional[int] = Field(
        default=None,
        ge=0,
        description="Explicit pause after the step (ms). The run default applies when omitted.",
    )

    def think_time_seconds(self, default_ms: int) -> float:
        """Fixed pause applied after the step, before any scaling."""
        think_time_ms = self.thinkTimeMs if self.thinkTimeMs is not None else default_ms
        return think_time_ms / 1000.0


class JourneyDefinition(BaseModel):
    """A company's customer journey: ordered steps replayed by every virtual user."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    companyName: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1)
    steps: List[StepDefinition] = Field(...)
    errorSimulationEnabled: bool = Field(default=False)
    additionalFields: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def check_step_sequence(self) -> 'JourneyDefinition':
        if not self.steps:
            raise ValueError("Journey must contain at least one step")
        for position, step in enumerate(self.steps, start=1):
            if step.stepNumber != position:
                raise ValueError(
                    f"Step '{step.stepName}' has stepNumber {step.stepNumber} but is at position {position}; "
                    "step numbers must be strictly increasing from 1"
                )
        return self


# ---------------------------
# Run Configuration (Config & Start Request)
# ---------------------------
_CONFIG_ALIASES = {
    'target_url': 'Target URL',
    'simulation_path': 'Simulation Path',
    'virtual_users': 'Virtual Users',
    'iterations': 'Iterations',
    'run_label': 'Run Label',
    'journey_label': 'Journey Label',
    'service_identifier': 'Service Identifier',
    'platform_component': 'Platform Component',
    'user_agent': 'User Agent',
    'receive_timeout_s': 'Receive Timeout S',
    'max_retries': 'Max Retries',
    'retry_backoff_ms': 'Retry Backoff MS',
    'max_body_bytes': 'Max Body Bytes',
    'default_think_time_ms': 'Default Think Time MS',
    'payload_think_time_ms': 'Payload Think Time MS',
    'think_time_scale': 'Think Time Scale',
    'max_think_time_s': 'Max Think Time S',
    'journey_interval_ms': 'Journey Interval MS',
    'duration_s': 'Duration S',
    'run_seed': 'Run Seed',
    'stop_flag_paths': 'Stop Flag Paths',
    'send_completion_event': 'Send Completion Event',
    'debug': 'Debug',
}


class RunConfig(BaseModel):
    """Runtime configuration for JourneyRunner."""
    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=lambda field_name: _CONFIG_ALIASES.get(field_name, field_name),
        extra="ignore",
    )

    target_url: str = Field(..., description="Base URL of the journey-simulation service")
    simulation_path: str = Field(default="/api/journey-simulation/simulate-journey")
    virtual_users: int = Field(default=1, ge=1, description="Number of concurrent virtual users")
    iterations: Optional[int] = Field(
        default=1, ge=1, description="Journey iterations per virtual user. None runs until stopped."
    )
    run_label: Optional[str] = Field(default=None, description="Load test name (LTN). Defaults to '<company>_LoadTest_<YYYYMMDD>'")
    journey_label: Optional[str] = Field(default=None, description="Script name (LSN). Defaults to 'BizObs_<company>_<domain>_Journey'")
    service_identifier: str = Field(default="LoadRunner")
    platform_component: str = Field(default="BizObs-Demo")
    user_agent: str = Field(default="LoadRunner-BizObs-Agent/1.0")
    receive_timeout_s: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt, on transport errors only")
    retry_backoff_ms: int = Field(default=500, ge=0)
    max_body_bytes: int = Field(default=1_024_000, ge=1)
    default_think_time_ms: int = Field(default=5000, ge=0, description="Pause after a step that sets no thinkTimeMs")
    payload_think_time_ms: int = Field(default=250, ge=0, description="thinkTimeMs value sent in step payloads")
    think_time_scale: float = Field(default=1.0, ge=0)
    max_think_time_s: Optional[float] = Field(default=None, ge=0)
    journey_interval_ms: int = Field(default=0, ge=0, description="Pause between iterations of one virtual user")
    duration_s: Optional[float] = Field(default=None, gt=0, description="Stop the run after this many seconds")
    run_seed: Optional[int] = Field(default=None, description="Seed for per-user profile draws")
    stop_flag_paths: List[str] = Field(default_factory=list)
    send_completion_event: bool = Field(default=True)
    debug: bool = Field(default=False)

    @field_validator('target_url')
    def validate_target_url(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"target_url must be an absolute http(s) URL (e.g., 'http://localhost:8080'), got '{v}'")
        return v.rstrip('/')

    @field_validator('simulation_path')
    def validate_simulation_path(cls, v):
        return v if v.startswith('/') else '/' + v

    @field_validator('run_label', 'journey_label', 'run_seed', 'duration_s', 'max_think_time_s', mode='before')
    def empty_string_is_none(cls, v):
        if v == "":
            return None
        return v


class StartRequest(BaseModel):
    config: RunConfig
    journey: JourneyDefinition


# ---------------------------
# Customer Catalog & Virtual User Context
# ---------------------------
CUSTOMER_NAMES = [
    "Sarah Johnson", "Michael Chen", "Emma Rodriguez", "David Kim",
    "Ashley Thompson", "Robert Martinez", "Jennifer Lee", "Christopher Brown",
    "Amanda Wilson", "Joshua Garcia", "Melissa Davis", "Andrew Miller",
    "Jessica Anderson", "Kevin Taylor", "Lauren Thomas", "Brian Jackson",
]
CUSTOMER_EMAILS = [
    name.lower().replace(" ", ".") + "@email.com" for name in CUSTOMER_NAMES
]
CUSTOMER_SEGMENTS = ["Premium", "Standard", "Budget", "Enterprise", "SMB", "Startup"]
TRAFFIC_SOURCES = [
    "Google_Ads", "Facebook_Campaign", "Email_Newsletter", "Direct_Traffic",
    "Referral_Partner", "Organic_Search", "Social_Media", "Content_Marketing",
]


class CustomerProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    email: str
    segment: str
    deviceType: str = "desktop"
    location: str = "US-East"


def draw_customer_profile(rng: random.Random) -> CustomerProfile:
    """Uniform draw from the fixed catalog; name and email stay paired."""
    index = rng.randrange(len(CUSTOMER_NAMES))
    return CustomerProfile(
        name=CUSTOMER_NAMES[index],
        email=CUSTOMER_EMAILS[index],
        segment=rng.choice(CUSTOMER_SEGMENTS),
    )


class JourneyIdentifiers(BaseModel):
    model_config = ConfigDict(frozen=True)

    correlation_id: str
    customer_id: str
    session_id: str
    trace_id: str


def generate_identifiers(
    worker_id: int,
    iteration: int,
    wall_clock_seconds: int,
    run_label: str,
    journey_label: str,
) -> JourneyIdentifiers:
    correlation_id = f"LR_{run_label}_{worker_id}_{iteration}_{wall_clock_seconds}"
    return JourneyIdentifiers(
        correlation_id=correlation_id,
        customer_id=f"customer_{worker_id}_{iteration}_{wall_clock_seconds % 10000}",
        session_id=f"session_{journey_label}_{worker_id}_{iteration}",
        trace_id=f"trace_{correlation_id}_{wall_clock_seconds}",
    )


class VirtualUserContext(BaseModel):
    """
    State of one virtual user for one iteration. A new instance is built for every
    iteration; profile and traffic source are carried over from the worker.
    """
    model_config = ConfigDict(frozen=True)

    worker_id: int
    iteration: int
    customer_profile: CustomerProfile
    traffic_source: str
    correlation_id: str
    customer_id: str
    session_id: str
    trace_id: str

    @classmethod
    def for_iteration(
        cls,
        worker_id: int,
        iteration: int,
        customer_profile: CustomerProfile,
        traffic_source: str,
        identifiers: JourneyIdentifiers,
    ) -> 'VirtualUserContext':
        return cls(
            worker_id=worker_id,
            iteration=iteration,
            customer_profile=customer_profile,
            traffic_source=traffic_source,
            **identifiers.model_dump(),
        )

    @property
    def log_prefix(self) -> str:
        return f"VU {self.worker_id} (Iter {self.iteration})"


# ---------------------------
# Results
# ---------------------------
Outcome = Literal["Pass", "Fail"]


class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_number: int
    step_name: str
    service_name: str
    http_status: Optional[int] = None
    duration_ms: float
    outcome: Outcome
    failure_kind: Optional[Literal["transport", "application"]] = None
    error: Optional[str] = None


class JourneyResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    worker_id: int
    iteration: int
    correlation_id: str
    total_duration_ms: float
    steps: List[StepResult]

    @computed_field
    @property
    def outcome(self) -> Outcome:
        return "Pass" if all(step.outcome == "Pass" for step in self.steps) else "Fail"


class Transaction:
    """Named timing boundary measured on the monotonic clock."""

    def __init__(self, name: str):
        self.name = name
        self._started_at: Optional[float] = None
        self.duration_ms: Optional[float] = None

    def start(self) -> 'Transaction':
        self._started_at = time.monotonic()
        return self

    def end(self) -> float:
        if self._started_at is None:
            raise RuntimeError(f"Transaction '{self.name}' ended before it was started")
        self.duration_ms = (time.monotonic() - self._started_at) * 1000.0
        return self.duration_ms


# ---------------------------
# Result Aggregation
# ---------------------------
class StepStats(BaseModel):
    count: int = 0
    passed: int = 0
    failed: int = 0
    avg_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    p95_ms: float = 0.0


class RunSummary(BaseModel):
    journeys: StepStats
    steps: Dict[str, StepStats]
    requests_total: int
    completion_events_sent: int
    completion_events_failed: int


class _DurationSeries:
    """Running totals plus a bounded sample window for percentiles."""

    def __init__(self, sample_size: int):
        self.count = 0
        self.passed = 0
        self.total_ms = 0.0
        self.min_ms = math.inf
        self.max_ms = 0.0
        self.samples = deque(maxlen=sample_size)

    def add(self, duration_ms: float, outcome: Outcome):
        self.count += 1
        if outcome == "Pass":
            self.passed += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.samples.append(duration_ms)

    def stats(self) -> StepStats:
        if self.count == 0:
            return StepStats()
        ordered = sorted(self.samples)
        p95_index = max(math.ceil(0.95 * len(ordered)) - 1, 0)
        return StepStats(
            count=self.count,
            passed=self.passed,
            failed=self.count - self.passed,
            avg_ms=self.total_ms / self.count,
            min_ms=self.min_ms,
            max_ms=self.max_ms,
            p95_ms=ordered[p95_index],
        )


class ResultAggregator:
    """
    Collects journey and step outcomes from every virtual user.
    Workers only append; every submission is applied under one asyncio.Lock.
    Also tracks request RPS over a rolling one-second window.
    """
    def __init__(self, sample_size: int = 10_000):
        self.lock = asyncio.Lock()
        self.sample_size = sample_size
        self.request_timestamps = deque()
        self.requests_total = 0
        self.journeys = _DurationSeries(sample_size)
        self.step_series: Dict[str, _DurationSeries] = {}
        self.completion_events_sent = 0
        self.completion_events_failed = 0

    async def increment(self):
        """Record that a request was answered (for RPS)."""
        now = time.monotonic()
        async with self.lock:
            self.requests_total += 1
            self.request_timestamps.append(now)
            one_second_ago = now - 1.0
            while self.request_timestamps and self.request_timestamps[0] < one_second_ago:
                self.request_timestamps.popleft()

    async def get_rps(self) -> float:
        """Return the approximate RPS over the last 1 second."""
        now = time.monotonic()
        async with self.lock:
            one_second_ago = now - 1.0
            while self.request_timestamps and self.request_timestamps[0] < one_second_ago:
                self.request_timestamps.popleft()
            return float(len(self.request_timestamps))

    async def record_journey(self, result: JourneyResult):
        """Record a finished journey together with all of its step results."""
        async with self.lock:
            self.journeys.add(result.total_duration_ms, result.outcome)
            for step in result.steps:
                series = self.step_series.get(step.step_name)
                if series is None:
                    series = self.step_series[step.step_name] = _DurationSeries(self.sample_size)
                series.add(step.duration_ms, step.outcome)

    async def record_completion_event(self, delivered: bool):
        async with self.lock:
            if delivered:
                self.completion_events_sent += 1
            else:
                self.completion_events_failed += 1

    async def snapshot(self) -> RunSummary:
        async with self.lock:
            return RunSummary(
                journeys=self.journeys.stats(),
                steps={name: series.stats() for name, series in self.step_series.items()},
                requests_total=self.requests_total,
                completion_events_sent=self.completion_events_sent,
                completion_events_failed=self.completion_events_failed,
            )

    async def reset(self):
        async with self.lock:
            self.request_timestamps.clear()
            self.requests_total = 0
            self.journeys = _DurationSeries(self.sample_size)
            self.step_series = {}
            self.completion_events_sent = 0
            self.completion_events_failed = 0


# ---------------------------
# Step Executor
# ---------------------------
class StepExecutor:
    """Sends one journey step per call and classifies the outcome."""

    def __init__(
        self,
        config: RunConfig,
        journey: JourneyDefinition,
        aggregator: ResultAggregator,
        *,
        run_label: str,
        journey_label: str,
    ):
        self.config = config
        self.journey = journey
        self.aggregator = aggregator
        self.run_label = run_label
        self.journey_label = journey_label
        self.endpoint_url = f"{config.target_url}{config.simulation_path}"

    # --- Request building ---
    def build_tracing_header(self, transaction_name: str, context: VirtualUserContext) -> str:
        # Field order is parsed positionally downstream: TSN, LSN, LTN, VU, SI, PC, AN, CID
        fields = [
            ("TSN", transaction_name),
            ("LSN", self.journey_label),
            ("LTN", self.run_label),
            ("VU", context.worker_id),
            ("SI", self.config.service_identifier),
            ("PC", self.config.platform_component),
            ("AN", self.journey.companyName),
            ("CID", context.correlation_id),
        ]
        return ";".join(f"{key}={value}" for key, value in fields)

    def build_step_headers(self, step: StepDefinition, context: VirtualUserContext) -> Dict[str, str]:
        return {
            TRACING_HEADER: self.build_tracing_header(step.stepName, context),
            "x-correlation-id": context.correlation_id,
            "x-customer-id": context.customer_id,
            "x-session-id": context.session_id,
            "x-trace-id": context.trace_id,
            "x-step-name": step.stepName,
            "x-service-name": step.serviceName,
            "x-customer-segment": context.customer_profile.segment,
            "x-traffic-source": context.traffic_source,
            "x-test-iteration": str(context.iteration),
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
        }

    def build_step_payload(self, step: StepDefinition, context: VirtualUserContext) -> Dict[str, Any]:
        profile = context.customer_profile
        return {
            "journeyId": context.correlation_id,
            "customerId": context.customer_id,
            "sessionId": context.session_id,
            "traceId": context.trace_id,
            "chained": True,
            "thinkTimeMs": self.config.payload_think_time_ms,
            "errorSimulationEnabled": self.journey.errorSimulationEnabled,
            "journey": {
                "journeyId": context.correlation_id,
                "companyName": self.journey.companyName,
                "domain": self.journey.domain,
                "steps": [{
                    "stepNumber": step.stepNumber,
                    "stepName": step.stepName,
                    "serviceName": step.serviceName,
                    "description": step.description,
                    "estimatedDuration": step.estimatedDuration,
                    "substeps": [substep.model_dump() for substep in step.substeps],
                }],
                "additionalFields": dict(self.journey.additionalFields),
                "customerProfile": {
                    "name": profile.name,
                    "email": profile.email,
                    "segment": profile.segment,
                    "userId": context.customer_id,
                    "deviceType": profile.deviceType,
                    "location": profile.location,
                },
            },
        }

    def build_completion_headers(self, context: VirtualUserContext) -> Dict[str, str]:
        return {
            TRACING_HEADER: self.build_tracing_header(COMPLETION_EVENT_NAME, context),
            "x-correlation-id": context.correlation_id,
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
        }

    def build_completion_payload(self, context: VirtualUserContext) -> Dict[str, Any]:
        return {
            "eventType": "journey_completed",
            "correlationId": context.correlation_id,
            "customerId": context.customer_id,
            "companyName": self.journey.companyName,
            "customerName": context.customer_profile.name,
            "customerSegment": context.customer_profile.segment,
            "totalSteps": len(self.journey.steps),
            "loadTest": True,
            "completionTime": datetime.now(timezone.utc).isoformat(),
        }

    # --- Transport ---
    async def _post_with_retries(
        self,
        session: aiohttp.ClientSession,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        label: str,
    ) -> int:
        """
        POSTs the payload and returns the HTTP status. Connection errors and timeouts
        are retried with exponential backoff; any status code is returned as-is.
        Raises TransportError when no response could be obtained.
        """
        attempts = self.config.max_retries + 1
        base_retry_delay = self.config.retry_backoff_ms / 1000.0

        for attempt in range(attempts):
            try:
                async with session.post(self.endpoint_url, json=payload, headers=headers) as resp:
                    # Drain (bounded) so the connection can be reused; body is not interpreted
                    await resp.content.read(self.config.max_body_bytes)
                    return resp.status

            except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as conn_err:
                logger.warning(f"{label}: Attempt {attempt+1}/{attempts} failed: {type(conn_err).__name__}: {conn_err}")
                if attempt < attempts - 1:
                    retry_delay = base_retry_delay * (2 ** attempt)
                    logger.debug(f"{label}: Retrying after {retry_delay:.2f}s...")
                    await asyncio.sleep(retry_delay)
                    continue
                raise TransportError(
                    f"Connection/Timeout Error after {attempts} attempts: {type(conn_err).__name__}: {conn_err}"
                ) from conn_err

            except aiohttp.ClientError as client_err:
                raise TransportError(f"HTTP Client Error: {client_err}") from client_err

        # Unreachable: the loop either returns or raises
        raise TransportError(f"No attempt was made for {label}")

    async def execute(
        self,
        session: aiohttp.ClientSession,
        step: StepDefinition,
        context: VirtualUserContext,
    ) -> StepResult:
        """
        Executes one step for one virtual user: request, classification, cookie reset
        and think time. Never raises for request failures; they become a Fail result.
        """
        label = f"{context.log_prefix} Step {step.stepNumber} '{step.stepName}'"
        headers = self.build_step_headers(step, context)
        payload = self.build_step_payload(step, context)

        http_status = None
        failure_kind = None
        error = None

        logger.info(f"{label}: Transaction started (service={step.serviceName}, correlation={context.correlation_id})")
        transaction = Transaction(step.stepName).start()
        try:
            http_status = await self._post_with_retries(session, payload, headers, label)
        except TransportError as transport_err:
            failure_kind = "transport"
            error = str(transport_err)
        except Exception as e:
            failure_kind = "transport"
            error = f"Unexpected error during request execution: {e}"
            logger.error(f"{label}: {error}", exc_info=self.config.debug)
        finally:
            session.cookie_jar.clear()
        duration_ms = transaction.end()

        if http_status is not None:
            await self.aggregator.increment()
            if http_status >= 400:
                failure_kind = "application"
                error = f"HTTP {http_status}"

        outcome: Outcome = "Pass" if failure_kind is None else "Fail"
        if outcome == "Pass":
            logger.info(f"{label}: Pass - status {http_status} ({duration_ms:.2f} ms)")
        elif failure_kind == "application":
            logger.error(f"{label}: Fail - status {http_status} ({duration_ms:.2f} ms)")
        else:
            logger.error(f"{label}: Fail - {error} ({duration_ms:.2f} ms)")

        result = StepResult(
            step_number=step.stepNumber,
            step_name=step.stepName,
            service_name=step.serviceName,
            http_status=http_status,
            duration_ms=duration_ms,
            outcome=outcome,
            failure_kind=failure_kind,
            error=error,
        )

        await self.apply_think_time(step, label)
        return result

    def think_time_for(self, step: StepDefinition) -> float:
        think_time_s = step.think_time_seconds(self.config.default_think_time_ms) * self.config.think_time_scale
        if self.config.max_think_time_s is not None:
            think_time_s = min(think_time_s, self.config.max_think_time_s)
        return think_time_s

    async def apply_think_time(self, step: StepDefinition, label: str):
        think_time_s = self.think_time_for(step)
        if think_time_s > 0:
            logger.debug(f"{label}: Think time {think_time_s:.2f}s")
            await asyncio.sleep(think_time_s)

    async def send_completion_event(self, session: aiohttp.ClientSession, context: VirtualUserContext) -> bool:
        """Fires the journey completion event. Failures are logged and counted only."""
        label = f"{context.log_prefix} {COMPLETION_EVENT_NAME}"
        try:
            await self._post_completion_event(session, context, label)
        except CompletionEventError as event_err:
            logger.warning(f"{label}: {event_err}")
            await self.aggregator.record_completion_event(False)
            return False
        logger.info(f"{label}: Completion event sent for {context.correlation_id}")
        await self.aggregator.record_completion_event(True)
        return True

    async def _post_completion_event(self, session: aiohttp.ClientSession, context: VirtualUserContext, label: str):
        headers = self.build_completion_headers(context)
        payload = self.build_completion_payload(context)
        try:
            status = await self._post_with_retries(session, payload, headers, label)
        except TransportError as transport_err:
            raise CompletionEventError(f"Completion event not delivered: {transport_err}") from transport_err
        except Exception as e:
            raise CompletionEventError(f"Unexpected error sending completion event: {e}") from e
        finally:
            session.cookie_jar.clear()
        if status >= 400:
            raise CompletionEventError(f"Completion event rejected with status {status}")


# ---------------------------
# Journey Orchestrator
# ---------------------------
class JourneyRunner:
    """Drives concurrent virtual users through a journey using asynchronous HTTP requests."""

    def __init__(
        self,
        config: RunConfig,
        journey: JourneyDefinition,
        aggregator: Optional[ResultAggregator] = None,
    ):
        if not isinstance(config, RunConfig) or not isinstance(journey, JourneyDefinition):
            raise ConfigurationError("JourneyRunner requires a validated RunConfig and JourneyDefinition")

        self.config = config
        self.journey = journey
        self.aggregator = aggregator or ResultAggregator()
        self.running = False
        self.user_tasks: List[asyncio.Task] = []
        self._active_users_count = 0
        self.lock = asyncio.Lock()  # Guards user_tasks and _active_users_count
        self.clock = time.time

        self.configure_logging(self.config.debug)

        company = self.journey.companyName.replace(" ", "_")
        self.run_label = config.run_label or f"{company}_LoadTest_{datetime.now(timezone.utc):%Y%m%d}"
        self.journey_label = config.journey_label or f"BizObs_{company}_{self.journey.domain}_Journey"
        self.run_seed = config.run_seed if config.run_seed is not None else random.SystemRandom().randrange(2**32)

        self.executor = StepExecutor(
            config, journey, self.aggregator,
            run_label=self.run_label,
            journey_label=self.journey_label,
        )

        logger.info(
            f"Journey Runner Initialized: Target='{self.executor.endpoint_url}', Virtual Users={self.config.virtual_users}, "
            f"Iterations={self.config.iterations or 'continuous'}, Run Seed={self.run_seed}, Debug={self.config.debug}"
        )
        logger.info(
            f"Journey Loaded: {self.journey.companyName} / {self.journey.domain} ({len(self.journey.steps)} steps), "
            f"LTN={self.run_label}, LSN={self.journey_label}"
        )

    def configure_logging(self, debug: bool):
        """Configures the logger level based on the debug flag."""
        log_level = logging.DEBUG if debug else logging.INFO
        logger.setLevel(log_level)
        for handler in logger.handlers:
            handler.setLevel(log_level)

    def worker_random(self, worker_id: int) -> random.Random:
        """Independent, reproducible random stream for one virtual user."""
        return random.Random(f"{self.run_seed}:{worker_id}")

    def create_session(self) -> aiohttp.ClientSession:
        """One session per virtual user, configured once for its lifetime."""
        timeout = aiohttp.ClientTimeout(
            total=None,
            connect=10,
            sock_connect=5,
            sock_read=self.config.receive_timeout_s,
        )
        connector = aiohttp.TCPConnector(limit_per_host=4, enable_cleanup_closed=True)
        return aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            cookie_jar=aiohttp.CookieJar(unsafe=True),
            headers={"User-Agent": self.config.user_agent},
        )

    def stop_flag_raised(self) -> Optional[str]:
        for path in self.config.stop_flag_paths:
            if os.path.exists(path):
                return path
        return None

    async def run_iteration(self, session: aiohttp.ClientSession, context: VirtualUserContext) -> JourneyResult:
        """Runs every step in order inside the enclosing journey transaction."""
        logger.info(f"{context.log_prefix}: Starting journey {context.correlation_id} for {context.customer_profile.name}")
        transaction = Transaction(JOURNEY_TRANSACTION).start()
        step_results = []
        for step in self.journey.steps:
            step_results.append(await self.executor.execute(session, step, context))
        total_duration_ms = transaction.end()

        result = JourneyResult(
            worker_id=context.worker_id,
            iteration=context.iteration,
            correlation_id=context.correlation_id,
            total_duration_ms=total_duration_ms,
            steps=step_results,
        )
        log_level = logging.INFO if result.outcome == "Pass" else logging.WARNING
        logger.log(
            log_level,
            f"{context.log_prefix}: {JOURNEY_TRANSACTION} {result.outcome} in {total_duration_ms:.2f} ms "
            f"({sum(1 for s in step_results if s.outcome == 'Fail')}/{len(step_results)} steps failed)"
        )
        return result

    async def simulate_virtual_user(self, worker_id: int):
        """
        Lifecycle of one virtual user: profile draw, session setup, iteration loop,
        pacing and cleanup. Cancellation discards the iteration in progress.
        """
        user_log_prefix = f"VU {worker_id}"
        session = None
        iteration = 0

        rng = self.worker_random(worker_id)
        profile = draw_customer_profile(rng)
        traffic_source = rng.choice(TRAFFIC_SOURCES)

        try:
            async with self.lock:
                self._active_users_count += 1
            logger.info(f"{user_log_prefix}: Started as {profile.name} ({profile.segment}, {traffic_source}). Active users: {self._active_users_count}")

            session = self.create_session()

            while self.running:
                if self.config.iterations is not None and iteration >= self.config.iterations:
                    break
                flag_path = self.stop_flag_raised()
                if flag_path:
                    logger.warning(f"{user_log_prefix}: Stop flag '{flag_path}' detected. Stopping run.")
                    self.running = False
                    break

                iteration += 1
                identifiers = generate_identifiers(
                    worker_id, iteration, int(self.clock()), self.run_label, self.journey_label
                )
                context = VirtualUserContext.for_iteration(worker_id, iteration, profile, traffic_source, identifiers)

                result = await self.run_iteration(session, context)
                await self.aggregator.record_journey(result)

                if self.config.send_completion_event:
                    await self.executor.send_completion_event(session, context)

                more_iterations = self.config.iterations is None or iteration < self.config.iterations
                if self.running and more_iterations and self.config.journey_interval_ms > 0:
                    rest_duration_s = self.config.journey_interval_ms / 1000.0
                    logger.info(f"{user_log_prefix}: Iteration {iteration} complete, next in {rest_duration_s:.2f}s")
                    await asyncio.sleep(rest_duration_s)

        except asyncio.CancelledError:
            logger.info(f"{user_log_prefix}: Task received cancellation signal (iteration {iteration} discarded if incomplete).")

        except Exception as e:
            logger.critical(f"{user_log_prefix}: Task exiting due to unhandled error: {e}", exc_info=True)

        finally:
            if session is not None and not session.closed:
                await session.close()
            async with self.lock:
                if self._active_users_count > 0:
                    self._active_users_count -= 1
            logger.info(f"{user_log_prefix}: Task finished after {iteration} iteration(s). Active users: {self._active_users_count}")

    async def start_generating(self):
        """Start all virtual user tasks and wait until they finish, the duration elapses or stop() is called."""
        async with self.lock:
            if self.running:
                logger.warning("Journey generation is already running.")
                return
            self.running = True
            self._active_users_count = 0
            self.user_tasks = [
                asyncio.create_task(self.simulate_virtual_user(worker_id))
                for worker_id in range(1, self.config.virtual_users + 1)
            ]
            tasks = list(self.user_tasks)

        logger.info(f"{len(tasks)} virtual user tasks created and started.")
        gathered = asyncio.gather(*tasks, return_exceptions=True)
        try:
            await asyncio.wait_for(asyncio.shield(gathered), timeout=self.config.duration_s)
        except asyncio.TimeoutError:
            logger.info(f"Run duration of {self.config.duration_s}s reached.")
            await self.stop_generating()
        except asyncio.CancelledError:
            await self.stop_generating()
            raise
        finally:
            self.running = False

    async def stop_generating(self):
        """Cancels all virtual user tasks and waits for them to acknowledge."""
        async with self.lock:
            self.running = False
            tasks_to_cancel = [task for task in self.user_tasks if not task.done()]
            self.user_tasks = []

        if not tasks_to_cancel:
            logger.debug("No active virtual user tasks needed cancellation.")
            return

        logger.info(f"Stopping journey generation: cancelling {len(tasks_to_cancel)} virtual user tasks...")
        for task in tasks_to_cancel:
            task.cancel()
        results = await asyncio.gather(*tasks_to_cancel, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Virtual user task finished with unexpected error during stop: {result}")
        self._active_users_count = 0
        logger.info("Journey generation stopped.")

    async def run(self) -> RunSummary:
        """Runs the whole load test and returns the aggregated summary."""
        started = time.monotonic()
        await self.start_generating()
        summary = await self.aggregator.snapshot()
        elapsed_s = time.monotonic() - started
        journeys = summary.journeys
        logger.info(
            f"Run complete in {elapsed_s:.2f}s: {journeys.count} journeys "
            f"({journeys.passed} passed, {journeys.failed} failed), avg {journeys.avg_ms:.2f} ms, "
            f"p95 {journeys.p95_ms:.2f} ms, {summary.requests_total} requests, "
            f"{summary.completion_events_sent} completion events sent"
        )
        for step_name, stats in summary.steps.items():
            logger.info(
                f"  {step_name}: {stats.passed}/{stats.count} passed, avg {stats.avg_ms:.2f} ms, "
                f"min {stats.min_ms:.2f} ms, max {stats.max_ms:.2f} ms"
            )
        return summary

    async def stop(self):
        """Alias for stop_generating for API clarity."""
        await self.stop_generating()

    def get_active_user_count(self) -> int:
        return self._active_users_count
