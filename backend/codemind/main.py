# backend/codemind/main.py
import argparse
import asyncio
import getpass
import logging
import platform
import sys
from typing import List, Optional

from .core.agent_manager import AgentManager
from .core.approval import AutoApprovalSurface
from .core.command_executor import CommandExecutor
from .core.config_manager import ConfigManager
from .core.exceptions import CoreError, InterruptedError, PlanEmptyError
from .core.orchestrator import OrchestratorAgent
from .core.project_models import ExecutionPlan, ProgressUpdate, WorkflowResult
from .core.workspace import FileStepApplier, WorkspaceReader, extract_mentions
from .ui.console_approval import ConsoleApprovalSurface

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] - %(message)s'  # Include thread name

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout)
    # Reduce verbosity of third-party libraries
    for noisy in ("urllib3", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codemind",
        description="Plan and carry out a coding request in a workspace.",
    )
    parser.add_argument("request", nargs="?", help="What you want done. Reference files with @path.")
    parser.add_argument("--workspace", "-w", default=".", help="Workspace root (default: current directory).")
    parser.add_argument("--current-file", help="Workspace-relative path of the file you are working in.")
    parser.add_argument("--open-file", action="append", default=[], help="Another open file (repeatable).")
    parser.add_argument("--provider", help="Provider id from providers.json (overrides settings).")
    parser.add_argument("--model", help="Model id (overrides settings).")
    parser.add_argument("--settings", help="JSON file with pipeline settings.")
    parser.add_argument("--list-providers", action="store_true", help="List the configured providers and their models, then exit.")
    parser.add_argument("--yes", "-y", action="store_true", help="Approve every terminal command without asking.")
    parser.add_argument("--dry-run", action="store_true", help="Print the plan without executing anything.")
    parser.add_argument("--apply-files", action="store_true", help="Write file steps that carry content.")
    parser.add_argument("--insights", action="store_true", help="Ask specialist agents to review the plan.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")
    return parser


def prompt_for_key(title: str, is_password: bool, message: Optional[str]) -> Optional[str]:
    print(title)
    prompt = f"{message or 'Value'}: "
    return getpass.getpass(prompt) if is_password else input(prompt)


def print_progress(update: ProgressUpdate) -> None:
    suffix = f" ({update.current_file})" if update.current_file else ""
    print(f"[{update.progress:3d}%] {update.status}{suffix}")


def format_plan(plan: ExecutionPlan) -> str:
    lines = [
        f"Plan: {plan.summary}",
        f"  Task type: {plan.task_type.value} | Complexity: {plan.estimated_complexity.value} | Confidence: {plan.confidence:.2f}",
    ]
    for number, step in enumerate(plan.steps, start=1):
        op = step.operation
        target = f"$ {op.command}" if step.is_terminal else step.file_path
        if op.type == "rename":
            target = f"{step.file_path} -> {op.new_path}"
        lines.append(f"  {number}. [{op.type}] {target}  (priority {step.priority})")
        lines.append(f"     {step.rationale}")
    if not plan.steps:
        lines.append("  (no steps)")
    for risk in plan.risks:
        lines.append(f"  Risk: {risk}")
    for check in plan.verification_steps:
        lines.append(f"  Verify: {check}")
    return "\n".join(lines)


def format_providers(config_manager: ConfigManager) -> str:
    lines = []
    for provider_id, display_name in config_manager.get_providers().items():
        lines.append(f"{provider_id} ({display_name})" if display_name != provider_id else provider_id)
        for model in config_manager.get_models_for_provider(provider_id):
            lines.append(f"  {model}")
    return "\n".join(lines) or "(no providers configured)"


def format_result(result: WorkflowResult) -> str:
    lines = []
    for number, report in enumerate(result.reports, start=1):
        title = "Initial plan" if number == 1 else f"Recovery plan {number - 1}"
        lines.append(f"{title}:")
        for step_result in report.step_results:
            lines.append(f"  - {step_result.step.file_path}: {step_result.status} {step_result.message}".rstrip())
    for outcome in result.recovery_outcomes:
        lines.append(f"Recovery analysis: {outcome.rationale}")
    lines.append("Result: " + ("SUCCESS" if result.succeeded else "NOT COMPLETED"))
    return "\n".join(lines)


async def run_request(args: argparse.Namespace, orchestrator: OrchestratorAgent, context) -> int:
    if args.dry_run or args.insights:
        analysis = await orchestrator.analyze_request(args.request, context, print_progress)
        plan = await orchestrator.plan_operations(args.request, analysis, context, print_progress)
        print(format_plan(plan))
        if args.insights:
            insights = await orchestrator.gather_specialist_insights(plan, context, progress_callback=print_progress)
            for path, analyses in insights.items():
                print(f"\nInsights for {path}:")
                for analysis_item in analyses:
                    for insight in analysis_item.insights:
                        print(f"  - {insight}")
                    for issue in analysis_item.issues.critical:
                        print(f"  ! {issue.description}")
        if args.dry_run:
            return 0
        result = await orchestrator.run(args.request, context, print_progress)
    else:
        result = await orchestrator.run(args.request, context, print_progress)
        print(format_plan(result.plan))
    print(format_result(result))
    return 0 if result.succeeded else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.request and not args.list_providers:
        parser.error("a request is required unless --list-providers is given")
    configure_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("Starting Codemind...")
    logger.info(f"Python Version: {sys.version}")
    logger.info(f"Platform: {platform.system()} ({platform.release()}) - {platform.machine()}")
    logger.info("=" * 60)

    orchestrator = None
    try:
        config_manager = ConfigManager(settings_path=args.settings)
        if args.list_providers:
            print(format_providers(config_manager))
            return 0
        settings = config_manager.settings
        provider = args.provider or settings.provider
        model = args.model or settings.model

        reader = WorkspaceReader(args.workspace)
        context = reader.build_context(
            current_file=args.current_file,
            mentioned=extract_mentions(args.request),
            open_files=args.open_file,
        )

        agent = AgentManager(provider, model, config_manager,
                             show_input_prompt_cb=None if args.yes else prompt_for_key)
        executor = None if args.dry_run else CommandExecutor(reader.root, default_timeout_ms=settings.command_timeout_ms)
        surface = AutoApprovalSurface() if args.yes else ConsoleApprovalSurface(timeout_s=settings.approval_timeout_s)
        applier = FileStepApplier(reader.root) if args.apply_files else None
        orchestrator = OrchestratorAgent(agent, settings, executor=executor, approval_surface=surface,
                                         step_applier=applier)
        return asyncio.run(run_request(args, orchestrator, context))

    except PlanEmptyError as e:
        logger.error(str(e))
        print(f"No plan: {e}", file=sys.stderr)
        return 2
    except InterruptedError as e:
        logger.warning(str(e))
        return 130
    except KeyboardInterrupt:
        if orchestrator:
            orchestrator.request_stop()
        logger.warning("Interrupted by user.")
        return 130
    except (CoreError, ValueError, RuntimeError, OSError) as e:
        logger.critical("Codemind could not complete the request.", exc_info=args.verbose)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        logger.info("Codemind finished.")


if __name__ == "__main__":
    sys.exit(main())
