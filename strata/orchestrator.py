"""
Main orchestrator for the two-tier stack lifecycle.

Every top-level operation is a sequential pipeline of components:

    apply:    context -> (gate) -> templates -> apply -> observe -> outputs
    teardown: context -> drain -> reap -> delete -> observe -> recovery
              -> orphans -> reap retained -> outputs cleanup
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .aws import AwsClients
from .cleanup import OrphanCleaner, ReapResult, RecoveryEngine, RecoveryReport, StoreReaper
from .compute import DrainController, DrainResult, DrainStatus, cleanup_task_definitions
from .config import Settings
from .context import RunContext, validate_context
from .envman import secrets
from .errors import ApplyFailureError, DeleteBlockedError, StrataError, ValidationError
from .events import EventLog, EventTypes, NullEventLog
from .models import (
    ApplyResult,
    BlockingResource,
    ComputeVariant,
    DrainTarget,
    EmptyingStrategy,
    ProjectStack,
    StackDescriptor,
    StackState,
    StatefulStore,
    StoreKind,
    Tier,
)
from .naming import ResourceNames, shared_stack_name
from .outputs import (
    deployment_log_path,
    outputs_path,
    remove_outputs,
    render_deployment_log,
    write_deployment_log,
    write_outputs,
)
from .pipeline import abandon_executions, build_trigger_archive, seed_trigger, start_pipeline
from .stacks import DependencyGate, StackApplier, StackObserver, StackReader
from .tags import base_tags
from .templates import TemplatePublisher, root_template, template_set
from .waiting import Waiter

logger = logging.getLogger(__name__)

# Retained resource types the reaper knows how to finish off
RETAINED_STORES = {
    "AWS::S3::Bucket": (StoreKind.OBJECT_STORE, EmptyingStrategy.EMPTY_AND_REMOVE),
    "AWS::ECR::Repository": (StoreKind.IMAGE_REGISTRY, EmptyingStrategy.EMPTY_AND_REMOVE),
    "AWS::Logs::LogGroup": (StoreKind.LOG_GROUP, EmptyingStrategy.DELETE),
    "AWS::SecretsManager::Secret": (StoreKind.SECRET_STORE, EmptyingStrategy.FORCE_DELETE),
}


@dataclass
class ProjectOptions:
    """Per-service inputs for the project template."""
    source_repo: str = ""  # organization/project/repository
    branch: str = "main"
    path_pattern: str = "/api/*"
    priority: int = 100
    cpu: int = 512
    memory: int = 1024
    desired_count: int = 0
    health_check_path: str = "/health"
    container_port: int = 80
    health_check_grace: int = 120
    path_base: str = ""

    def source_parts(self) -> List[str]:
        parts = [part for part in self.source_repo.strip("/").split("/") if part]
        if len(parts) != 3:
            raise ValidationError(
                f"Source repository '{self.source_repo}' must look like organization/project/repository"
            )
        return parts


@dataclass
class TeardownReport:
    """What a teardown did, including everything it could not finish."""
    stack_name: str
    existed: bool = True
    drain: Optional[DrainResult] = None
    pre_reap: List[ReapResult] = field(default_factory=list)
    post_reap: List[ReapResult] = field(default_factory=list)
    recovery: Optional[RecoveryReport] = None
    final_state: StackState = StackState.UNKNOWN
    abandoned_executions: List[str] = field(default_factory=list)
    partial_failures: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def retained(self) -> List[BlockingResource]:
        return self.recovery.retained if self.recovery else []

    @property
    def complete(self) -> bool:
        return self.final_state.gone and not self.partial_failures


@dataclass
class BatchTeardown:
    """Aggregated outcome of tearing down several project stacks."""
    reports: Dict[str, TeardownReport] = field(default_factory=dict)
    errors: Dict[str, StrataError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors and all(report.complete for report in self.reports.values())


class Orchestrator:
    """Wires the components together for one settings/credentials scope."""

    def __init__(
        self,
        settings: Settings,
        clients: Optional[AwsClients] = None,
        dry_run: bool = False,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.settings = settings
        self.clients = clients or AwsClients(settings.region, settings.profile)
        self.dry_run = dry_run

        self.waiter = Waiter(
            interval=settings.poll_interval,
            timeout=settings.create_timeout,
            sleep=sleep,
            clock=clock,
            cancel_event=cancel_event,
        )
        self.reader = StackReader(self.clients.cloudformation)
        self.observer = StackObserver(self.reader, self.waiter, settings.diagnostic_events)
        self.applier = StackApplier(
            self.clients.cloudformation, self.reader, self.observer, settings, dry_run=dry_run,
        )
        self.orphans = OrphanCleaner(self.clients.apigatewayv2, self.waiter.with_timeout(settings.orphan_wait))
        self.recovery = RecoveryEngine(
            self.applier,
            self.reader,
            self.observer,
            orphans=self.orphans,
            max_attempts=settings.recovery_attempts,
            delete_timeout=settings.delete_timeout,
        )
        self.applier.recovery = self.recovery
        self.gate = DependencyGate(self.reader)
        self.drainer = DrainController(self.clients.ecs, self.waiter)
        self.reaper = StoreReaper(
            self.clients.s3,
            self.clients.ecr,
            self.clients.secretsmanager,
            self.clients.logs,
            secret_recovery_days=settings.secret_recovery_days,
        )

    # Context

    def resolve_context(self, environment: str, variant: str, service: Optional[str] = None,
                        require_service: bool = False) -> RunContext:
        return validate_context(
            self.clients,
            project=self.settings.project_name,
            environment=environment,
            variant=variant,
            region=self.settings.region,
            service=service,
            profile=self.settings.profile,
            require_service=require_service,
        )

    def event_log(self, stack_name: str) -> EventLog:
        if self.dry_run:
            return NullEventLog(stack_name)
        return EventLog(stack_name, self.settings.state_dir)

    def _emit_context(self, events: EventLog, context: RunContext, names: ResourceNames) -> None:
        events.emit(EventTypes.CONTEXT_OK, {
            "stack": names.stack,
            "account": context.account_id,
            "region": context.region,
            "variant": context.variant.value,
            "caller": context.caller_arn,
        })

    def publisher(self, region: str) -> TemplatePublisher:
        if not self.settings.templates_bucket:
            raise ValidationError(
                "A templates bucket is required",
                remediation="Pass --template-bucket or set templates_bucket in strata.yaml",
            )
        return TemplatePublisher(
            self.clients.s3,
            self.clients.cloudformation,
            bucket=self.settings.templates_bucket,
            prefix=self.settings.templates_prefix,
            region=region,
            template_dir=Path(self.settings.template_dir),
            buildspec_dir=Path(self.settings.buildspec_dir),
        )

    # Apply

    def shared_parameters(self, context: RunContext) -> Dict[str, str]:
        return {
            "Environment": context.environment,
            "ProjectName": context.project,
            "ComputeType": context.variant.value,
            "VpcCidr": self.settings.vpc_cidr,
            "TemplatesBucketName": self.settings.templates_bucket or "",
            "TemplatesBucketPrefix": self.settings.templates_prefix,
            "CustomDomainName": self.settings.custom_domain,
            "CertificateArn": self.settings.certificate_arn,
        }

    def project_parameters(self, context: RunContext, options: ProjectOptions) -> Dict[str, str]:
        organization, project, repository = options.source_parts()
        return {
            "Environment": context.environment,
            "InfraProjectName": context.project,
            "ServiceName": context.service,
            "SourceOrganization": organization,
            "SourceProject": project,
            "SourceRepository": repository,
            "BranchName": options.branch,
            "PathPattern": options.path_pattern,
            "ListenerRulePriority": str(options.priority),
            "ContainerCpu": str(options.cpu),
            "ContainerMemory": str(options.memory),
            "DesiredCount": str(options.desired_count),
            "TemplatesBucketName": self.settings.templates_bucket or "",
            "TemplatesBucketPrefix": self.settings.templates_prefix,
            "HealthCheckPath": options.health_check_path,
            "ContainerPort": str(options.container_port),
            "HealthCheckGracePeriod": str(options.health_check_grace),
            "PathBase": options.path_base,
        }

    def _publish(self, context: RunContext, tier: Tier, skip_upload: bool, events: EventLog):
        publisher = self.publisher(context.region)
        files = template_set(tier, context.variant)
        if not (skip_upload or self.dry_run):
            publisher.ensure_bucket()
        publisher.validate(files)
        published = publisher.publish(files, skip_upload=skip_upload or self.dry_run)
        events.emit(EventTypes.TEMPLATES_PUBLISHED, {
            "bucket": published.bucket,
            "prefix": published.prefix,
            "templates": files,
            "uploaded": published.uploaded,
        })
        return published

    def _apply(self, descriptor: StackDescriptor, events: EventLog) -> ApplyResult:
        events.emit(EventTypes.APPLY_ISSUED, {
            "stack": descriptor.canonical_name,
            "template": descriptor.template_url,
            "parameters": descriptor.parameters,
        })
        result = self.applier.apply(descriptor)
        if result.dry_run:
            return result
        if not result.changed:
            events.emit(EventTypes.APPLY_NOOP, {"stack": descriptor.canonical_name})
        else:
            events.emit(EventTypes.STACK_TERMINAL, {
                "stack": descriptor.canonical_name,
                "operation": result.operation.value,
                "state": result.final_state.value,
            })
        return result

    def _fail(self, events: EventLog, error: StrataError) -> None:
        data = error.to_dict()
        diagnostics = getattr(error, "events", None)
        if diagnostics:
            data["events"] = [event.describe() for event in diagnostics]
        events.emit(EventTypes.ERROR, data)

    def apply_shared(self, context: RunContext, skip_upload: bool = False,
                     user_tags: Optional[Dict[str, str]] = None) -> ApplyResult:
        """
        Create or update the shared stack.

        Returns:
            ApplyResult: NO_OP when nothing changed
        """
        names = context.names(Tier.SHARED)
        events = self.event_log(names.stack)
        self._emit_context(events, context, names)

        try:
            published = self._publish(context, Tier.SHARED, skip_upload, events)
            descriptor = StackDescriptor(
                canonical_name=names.stack,
                template_url=published.url(root_template(Tier.SHARED, context.variant)),
                parameters=self.shared_parameters(context),
                tags=base_tags(context.project, context.environment, context.variant, extra=user_tags),
                tier=Tier.SHARED,
                compute_variant=context.variant,
            )
            result = self._apply(descriptor, events)
            if not result.dry_run:
                self.report(context, result.outputs, events)
        except StrataError as e:
            self._fail(events, e)
            raise

        return result

    def apply_project(
        self,
        context: RunContext,
        options: ProjectOptions,
        skip_upload: bool = False,
        user_tags: Optional[Dict[str, str]] = None,
        trigger_pipeline: bool = True,
        source_token: Optional[str] = None,
    ) -> ApplyResult:
        """
        Create or update one project stack.

        The dependency gate runs before any mutating call; a refusal leaves
        the account untouched.
        """
        if not context.service:
            raise ValidationError("A service name is required for a project deploy")

        names = context.names(Tier.PROJECT)
        events = self.event_log(names.stack)
        self._emit_context(events, context, names)

        try:
            parameters = self.project_parameters(context, options)
            try:
                state = self.gate.check_dependency(names)
            except StrataError as e:
                events.emit(EventTypes.GATE_REFUSED, {"shared_stack": names.shared_stack, "reason": e.message})
                raise
            events.emit(EventTypes.GATE_OK, {"shared_stack": names.shared_stack, "state": state.value})

            published = self._publish(context, Tier.PROJECT, skip_upload, events)
            descriptor = StackDescriptor(
                canonical_name=names.stack,
                template_url=published.url(root_template(Tier.PROJECT, context.variant)),
                parameters=parameters,
                tags=base_tags(context.project, context.environment, context.variant,
                               service=context.service, extra=user_tags),
                tier=Tier.PROJECT,
                compute_variant=context.variant,
                service=context.service,
            )
            result = self._apply(descriptor, events)
            if result.dry_run:
                return result

            # The stack is settled; record its outputs before the follow-up steps
            path = write_outputs(
                outputs_path(self.settings.output_dir, context.environment, context.service),
                result.outputs,
            )
            events.emit(EventTypes.OUTPUTS_WRITTEN, {"path": str(path), "keys": sorted(result.outputs)})
            self.report(context, None, events)

            if source_token:
                secrets.provision(
                    names.source_secret_id,
                    secrets.source_token_material(source_token),
                    region=context.region,
                    profile=context.profile,
                )

            if trigger_pipeline:
                bucket = result.outputs.get("ArtifactBucketName") or names.artifact_bucket
                archive = build_trigger_archive(context.service, options.branch, Path(self.settings.buildspec_dir))
                seed_trigger(self.clients.s3, bucket, archive)
                start_pipeline(self.clients.codepipeline, names.pipeline)
        except StrataError as e:
            self._fail(events, e)
            raise

        return result

    # Reporting

    def report(self, context: RunContext, shared_outputs: Optional[Dict[str, str]],
               events: Optional[EventLog]) -> Path:
        """
        Regenerate the outputs artifact and deployment log of the environment.

        ``shared_outputs`` is written to the shared outputs file when given.
        """
        shared = context.names(Tier.SHARED)
        if shared_outputs is not None:
            path = write_outputs(outputs_path(self.settings.output_dir, context.environment), shared_outputs)
            if events:
                events.emit(EventTypes.OUTPUTS_WRITTEN, {"path": str(path), "keys": sorted(shared_outputs)})

        content = render_deployment_log(
            stack_name=shared.stack,
            environment=context.environment,
            region=context.region,
            account_id=context.account_id,
            variant=context.variant.value,
            outputs=self.reader.outputs(shared.stack),
            nested_stacks=self.reader.nested_stacks(shared.stack),
            project_stacks=self.gate.find_dependents(shared),
        )
        return write_deployment_log(deployment_log_path(self.settings.output_dir, context.environment), content)

    def status(self, context: RunContext) -> Dict:
        """Stack state, outputs and latest diagnostics for the context's stack."""
        names = context.names()
        state = self.reader.state(names.stack)
        data = {
            "stack": names.stack,
            "state": state.value,
            "outputs": self.reader.outputs(names.stack) if not state.gone else {},
            "events": [],
            "last_run": self.event_log(names.stack).last(),
        }
        if not state.gone:
            data["events"] = [
                event.describe()
                for event in self.reader.recent_events(names.stack, self.settings.diagnostic_events)
            ]
        if context.tier is Tier.SHARED:
            data["projects"] = [
                {"service": p.service, "stack": p.stack_name, "state": p.state.value,
                 "compute": p.compute_variant.value}
                for p in self.gate.find_dependents(names)
            ]
        return data

    # Teardown

    def _drain(self, target: DrainTarget, events: EventLog, drain_instances: bool = False) -> DrainResult:
        if self.dry_run:
            logger.info(f"[dry-run] would scale {target.service_ref} to 0")
            return DrainResult(target=target, status=DrainStatus.DRAINED)
        result = self.drainer.drain(target, drain_instances=drain_instances)
        if result.status is DrainStatus.TIMED_OUT:
            events.emit(EventTypes.DRAIN_TIMEOUT, {
                "service": target.service_ref,
                "running": result.running_count,
                "elapsed": round(result.elapsed, 1),
            })
        else:
            events.emit(EventTypes.DRAIN_DONE, {"service": target.service_ref, "status": result.status.value})
        return result

    def _reap(self, stores: List[StatefulStore], events: EventLog, phase: str) -> List[ReapResult]:
        if self.dry_run:
            for store in stores:
                logger.info(f"[dry-run] would empty {store.describe()} ({store.strategy.value})")
            return []
        results = self.reaper.empty_all(stores)
        survivors = {
            f"{result.store.describe()}/{member}": reason
            for result in results
            for member, reason in result.survivors.items()
        }
        if survivors:
            events.emit(EventTypes.REAP_PARTIAL, {"phase": phase, "survivors": survivors})
        else:
            events.emit(EventTypes.REAP_DONE, {
                "phase": phase,
                "stores": [result.store.describe() for result in results],
                "removed": sum(result.removed for result in results),
            })
        return results

    def _delete_stack(self, names: ResourceNames, report: TeardownReport, events: EventLog) -> None:
        """Delete, hand a DELETE_FAILED outcome to recovery, and record the final state."""
        events.emit(EventTypes.DELETE_ISSUED, {"stack": names.stack})
        result = self.applier.delete(names.stack)
        if result.dry_run:
            report.final_state = result.final_state
            return

        state = result.final_state
        if state is StackState.DELETE_FAILED:
            for event in result.diagnostics:
                logger.warning(f"  {event.describe()}")
            report.recovery = self.recovery.recover_delete(
                names.stack,
                orphan_prefix=names.orphan_prefix,
                attempts_used=1,
                events=events,
            )
            for resource_id, reason in report.recovery.orphan_failures.items():
                report.partial_failures[f"vpc-link/{resource_id}"] = reason
            state = report.recovery.final_state
        elif not state.gone:
            raise ApplyFailureError(
                f"Delete of {names.stack} ended in {state.value}",
                stack_name=names.stack,
                state=state,
                events=result.diagnostics,
            )

        report.final_state = StackState.NOT_FOUND if state.gone else state
        events.emit(EventTypes.STACK_TERMINAL, {
            "stack": names.stack,
            "operation": "delete",
            "state": report.final_state.value,
            "retained": [r.logical_id for r in report.retained],
        })

    def _retained_stores(self, report: TeardownReport) -> List[StatefulStore]:
        stores = []
        for resource in report.retained:
            mapping = RETAINED_STORES.get(resource.resource_type)
            if mapping and resource.physical_id:
                kind, strategy = mapping
                stores.append(StatefulStore(kind, resource.physical_id, strategy))
            else:
                report.warnings.append(
                    f"Retained {resource.logical_id} [{resource.resource_type}] "
                    f"{resource.physical_id or ''} must be removed manually if it still exists"
                )
        return stores

    @staticmethod
    def _record_partial(report: TeardownReport, results: List[ReapResult]) -> None:
        for result in results:
            for member, reason in result.survivors.items():
                report.partial_failures[f"{result.store.describe()}/{member}"] = reason

    @staticmethod
    def _raise_if_blocked(stack_name: str, results: List[ReapResult]) -> None:
        blockers = [
            f"{result.store.describe()}/{member}: {reason}"
            for result in results
            for member, reason in result.survivors.items()
        ]
        if blockers:
            raise DeleteBlockedError(
                f"Cannot delete {stack_name}: {len(blockers)} member(s) survived emptying",
                stack_name=stack_name,
                blockers=blockers,
                remediation="Remove the listed members (or fix their permissions) and re-run the teardown",
            )

    def teardown_project(self, context: RunContext, delete_secrets: bool = False,
                         retain_logs: bool = False) -> TeardownReport:
        """
        Tear down one project stack: drain, reap, delete, recover, clean up.

        Raises:
            DeleteBlockedError: A store could not be emptied before the delete
            RecoveryExhausted: The stack could not be deleted within the attempt budget
        """
        if not context.service:
            raise ValidationError("A service name is required for a project teardown")

        names = context.names(Tier.PROJECT)
        events = self.event_log(names.stack)
        self._emit_context(events, context, names)
        report = TeardownReport(stack_name=names.stack)

        try:
            state = self.reader.state(names.stack)
            if state.gone:
                logger.info(f"Stack {names.stack} does not exist; nothing to tear down")
                report.existed = False
                report.final_state = StackState.NOT_FOUND
                remove_outputs(outputs_path(self.settings.output_dir, context.environment, context.service))
                return report

            budget = (self.settings.drain_timeout_instances
                      if context.variant is ComputeVariant.EC2 else self.settings.drain_timeout)
            report.drain = self._drain(DrainTarget(
                cluster=names.cluster,
                service=names.ecs_service,
                compute_variant=context.variant,
                timeout_budget=budget,
                instance_timeout_budget=self.settings.instance_drain_timeout,
            ), events)
            if report.drain.status is DrainStatus.TIMED_OUT:
                report.warnings.append(f"{names.ecs_service} did not drain in time; continued anyway")

            if not self.dry_run:
                report.abandoned_executions = abandon_executions(self.clients.codepipeline, names.pipeline)

            report.pre_reap = self._reap([
                StatefulStore(StoreKind.IMAGE_REGISTRY, names.repository, EmptyingStrategy.EMPTY),
                StatefulStore(StoreKind.OBJECT_STORE, names.artifact_bucket, EmptyingStrategy.EMPTY_AND_REMOVE),
            ], events, "pre")
            self._raise_if_blocked(names.stack, report.pre_reap)

            self._delete_stack(names, report, events)
            if self.dry_run:
                return report

            post = self._retained_stores(report)
            if delete_secrets:
                post += [
                    StatefulStore(StoreKind.SECRET_STORE, secret_id, EmptyingStrategy.FORCE_DELETE)
                    for secret_id in names.secret_ids
                ]
            if not retain_logs:
                post += [
                    StatefulStore(StoreKind.LOG_GROUP, group, EmptyingStrategy.DELETE)
                    for group in names.log_groups
                ]
            report.post_reap = self._reap(post, events, "post")
            self._record_partial(report, report.post_reap)

            taskdefs = cleanup_task_definitions(self.clients.ecs, names.task_family)
            for arn, reason in taskdefs.failed.items():
                report.partial_failures[f"task-definition/{arn}"] = reason

            remove_outputs(outputs_path(self.settings.output_dir, context.environment, context.service))
            events.emit(EventTypes.TEARDOWN_DONE, {
                "stack": names.stack,
                "retained": [r.logical_id for r in report.retained],
                "partial_failures": report.partial_failures,
            })
        except StrataError as e:
            self._fail(events, e)
            raise

        return report

    def discover_projects(self, context: RunContext) -> List[ProjectStack]:
        return self.gate.find_dependents(context.names(Tier.SHARED))

    def teardown_projects(self, context: RunContext, services: Optional[List[str]] = None,
                          parallel: int = 1, delete_secrets: bool = False,
                          retain_logs: bool = False) -> BatchTeardown:
        """
        Tear down several project stacks, all of them when ``services`` is None.

        Stacks are independent, so up to ``parallel`` run at once. Failures
        are collected per service; one failure does not stop the others.
        """
        if services is None:
            targets = [(stack.service, stack.compute_variant) for stack in self.discover_projects(context)]
        else:
            targets = [(service, context.variant) for service in services]

        batch = BatchTeardown()
        if not targets:
            logger.info(f"No project stacks found in {context.environment}")
            return batch

        logger.info(f"Tearing down {len(targets)} project stack(s): {', '.join(s for s, _ in targets)}")

        def run(service: str, variant: ComputeVariant) -> TeardownReport:
            return self.teardown_project(
                context.for_service(service, variant),
                delete_secrets=delete_secrets,
                retain_logs=retain_logs,
            )

        with ThreadPoolExecutor(max_workers=max(1, parallel)) as pool:
            futures = {pool.submit(run, service, variant): service for service, variant in targets}
            for future in as_completed(futures):
                service = futures[future]
                try:
                    batch.reports[service] = future.result()
                except StrataError as e:
                    logger.error(f"Teardown of {service} failed: {e.message}")
                    batch.errors[service] = e
                except Exception as e:
                    logger.exception(f"Teardown of {service} failed unexpectedly")
                    error = StrataError(f"Unexpected failure: {e}")
                    error.__cause__ = e
                    batch.errors[service] = error

        return batch

    def teardown_shared(self, context: RunContext, retain_logs: bool = False,
                        delete_bucket: bool = False) -> TeardownReport:
        """
        Tear down the shared stack once no project stack depends on it.

        Raises:
            DependencyNotSatisfiedError: Project stacks still exist
        """
        names = context.names(Tier.SHARED)
        events = self.event_log(names.stack)
        self._emit_context(events, context, names)
        report = TeardownReport(stack_name=names.stack)

        try:
            try:
                self.gate.check_no_dependents(names)
            except StrataError as e:
                events.emit(EventTypes.GATE_REFUSED, {"shared_stack": names.stack, "reason": e.message})
                raise
            events.emit(EventTypes.GATE_OK, {"shared_stack": names.stack, "dependents": 0})

            other = ComputeVariant.FARGATE if context.variant is ComputeVariant.EC2 else ComputeVariant.EC2
            other_stack = shared_stack_name(context.project, context.environment, other)
            if not self.reader.state(other_stack).gone:
                message = (f"Shared stack {other_stack} ({other.value}) also exists and shares the "
                           f"image repository {names.repository}; it is left in place")
                logger.warning(message)
                report.warnings.append(message)

            state = self.reader.state(names.stack)
            report.existed = not state.gone

            if report.existed:
                instance_backed = context.variant is ComputeVariant.EC2
                report.drain = self._drain(DrainTarget(
                    cluster=names.cluster,
                    service=names.ecs_service,
                    compute_variant=context.variant,
                    timeout_budget=(self.settings.drain_timeout_instances
                                    if instance_backed else self.settings.drain_timeout),
                    instance_timeout_budget=self.settings.instance_drain_timeout,
                ), events, drain_instances=instance_backed)
                if report.drain.status is DrainStatus.TIMED_OUT:
                    report.warnings.append(f"{names.ecs_service} did not drain in time; continued anyway")

                report.pre_reap = self._reap([
                    StatefulStore(StoreKind.IMAGE_REGISTRY, names.repository, EmptyingStrategy.EMPTY),
                ], events, "pre")
                self._raise_if_blocked(names.stack, report.pre_reap)

                self._delete_stack(names, report, events)
                if self.dry_run:
                    return report
            else:
                logger.info(f"Stack {names.stack} does not exist; cleaning up leftovers only")
                report.final_state = StackState.NOT_FOUND

            post = self._retained_stores(report)
            if not retain_logs:
                post += [
                    StatefulStore(StoreKind.LOG_GROUP, prefix, EmptyingStrategy.DELETE_PREFIX)
                    for prefix in names.log_group_prefixes
                ]
            post.append(StatefulStore(StoreKind.OBJECT_STORE, names.artifact_bucket,
                                      EmptyingStrategy.EMPTY_AND_REMOVE))
            if delete_bucket and self.settings.templates_bucket:
                post.append(StatefulStore(StoreKind.OBJECT_STORE, self.settings.templates_bucket,
                                          EmptyingStrategy.EMPTY_AND_REMOVE))
            report.post_reap = self._reap(post, events, "post")
            self._record_partial(report, report.post_reap)

            remove_outputs(outputs_path(self.settings.output_dir, context.environment))
            events.emit(EventTypes.TEARDOWN_DONE, {
                "stack": names.stack,
                "retained": [r.logical_id for r in report.retained],
                "partial_failures": report.partial_failures,
            })
        except StrataError as e:
            self._fail(events, e)
            raise

        return report
