#!/usr/bin/env python3
"""
Variation QA Runner

Tests every variation of an experiment on a live page until each one is
accepted, needs review, or is aborted:
- Run an experiment: --experiment experiments/hero-cta.yaml
- Quick refinement ceiling: --quick
- Only the first N variations: --limit N
"""

import argparse
import asyncio
import csv
import logging
import signal
import sys
from datetime import datetime
from typing import List, Optional

from .api_client import APIClient
from .config_loader import ConfigLoader
from .controller import IterationController
from .experiment_loader import Experiment, ExperimentLoader
from .generator import CodeGenerator, select_variation_code
from .harness import BrowserHarness
from .judge import VisionJudge
from .models import CancellationToken, RunOutcome, RunResult, Variation


class VariationRunner:
    """Manages variation runs and reporting."""

    def __init__(self, config: ConfigLoader, verbose: bool = False):
        """
        Initialize variation runner.

        Args:
            config: Configuration loader
            verbose: Enable verbose output
        """
        self.config = config
        self.verbose = verbose

        self.api_client = APIClient(
            base_url=config.get_api_endpoint(),
            timeout=config.get_timeout()
        )

        judge_config = config.get_judge_config()
        self.judge = VisionJudge(
            provider=judge_config['provider'],
            model_name=judge_config['model_name'],
            api_key=judge_config['api_key'],
            temperature=judge_config.get('temperature'),
            endpoint=judge_config.get('endpoint'),
            max_iterations=config.get_iteration_config()['max_iterations']
        )

        generator_config = config.get_generator_config()
        self.generator = CodeGenerator(
            provider=generator_config['provider'],
            model_name=generator_config['model_name'],
            api_key=generator_config['api_key'],
            temperature=generator_config.get('temperature'),
            endpoint=generator_config.get('endpoint')
        )

        self.token = CancellationToken()
        self.results: List[RunResult] = []

    async def run_experiment(self, experiment: Experiment, quick: bool = False, limit: Optional[int] = None):
        """
        Run all variations of an experiment sequentially on one tab.

        Args:
            experiment: Loaded experiment
            quick: Use the quick-refinement iteration ceiling
            limit: Maximum number of variations to run
        """
        print(f"\n{'='*70}")
        print(f"Experiment: {experiment.name} (ID: {experiment.id})")
        print(f"{'='*70}\n")

        print("Checking API server connection...")
        if not self.api_client.check_health():
            print("ERROR: Cannot connect to API server at", self.config.get_api_endpoint())
            print("Please ensure the browser-control server is running.")
            sys.exit(1)
        print("✓ API server is reachable\n")

        clients = self.api_client.list_clients()
        if not clients:
            print("ERROR: No browser clients connected")
            sys.exit(1)
        client_id = clients[0].get('id')

        print(f"Opening: {experiment.url}")
        opened = self.api_client.open_tab(client_id, experiment.url, experiment.wait_timeout)
        if not opened['success']:
            print(f"ERROR: Could not open tab: {opened['error']}")
            sys.exit(1)
        print(f"✓ Tab opened: {opened['tab_id']}\n")

        harness = BrowserHarness(self.api_client, client_id, opened['tab_id'])
        controller = IterationController.from_config(self.config, harness, self.judge, self.generator)

        variations = experiment.get_variations()
        if limit:
            variations = variations[:limit]

        page_data = experiment.get_page_data()
        if not await self._generate_missing_code(page_data, experiment.request, variations):
            return

        self._install_interrupt_handler()

        await controller.run_batch(
            variations,
            original_request=experiment.request,
            page_data=page_data,
            token=self.token,
            quick=quick,
            request_delay=self.config.get_request_delay(),
            on_result=self._print_result
        )

        self._print_summary()
        self._save_report(experiment.id)

    async def _generate_missing_code(self, page_data, request: str, variations: List[Variation]) -> bool:
        missing = [v for v in variations if not v.css and not v.js]
        if not missing:
            return True

        print(f"Generating code for {len(missing)} variation(s)...")
        response = await self.generator.generate_code(
            page_data,
            request,
            [{"number": v.number, "name": v.name, "description": v.description} for v in missing]
        )
        if not response['success']:
            print(f"ERROR: {response['error']}")
            return False

        for variation in missing:
            css, js = select_variation_code(response['code'], variation.number) or ("", "")
            variation.replace_code(css, js)
        print("✓ Code generated\n")
        return True

    def _install_interrupt_handler(self):
        try:
            asyncio.get_running_loop().add_signal_handler(
                signal.SIGINT, self.token.cancel, "Interrupted by user"
            )
        except NotImplementedError:
            pass

    def _print_result(self, result: RunResult):
        self.results.append(result)

        marker = "✓" if result.outcome == RunOutcome.ACCEPTED else "✗"
        print(f"{marker} {result.variation.name}: {result.outcome.value} "
              f"({result.iterations} iteration(s), {result.elapsed:.1f}s)")
        print(f"  {result.reason}")

        if self.verbose:
            for error in result.technical_errors:
                print(f"  - {error}")
            for defect in result.remaining_defects:
                print(f"  - [{defect.severity.value}] {defect.type}: {defect.description}")
        print()

    def _print_summary(self):
        """Print summary statistics."""
        if not self.results:
            return

        total = len(self.results)
        counts = {outcome: 0 for outcome in RunOutcome}
        for result in self.results:
            counts[result.outcome] += 1
        avg_iterations = sum(r.iterations for r in self.results) / total
        total_tokens = sum(r.usage['total_tokens'] for r in self.results)

        print(f"\n{'='*70}")
        print("Summary")
        print(f"{'='*70}")
        print(f"Total: {total}")
        print(f"Accepted: {counts[RunOutcome.ACCEPTED]}")
        print(f"Needs review: {counts[RunOutcome.NEEDS_REVIEW]}")
        print(f"Aborted: {counts[RunOutcome.ABORTED]}")
        print(f"Average Iterations: {avg_iterations:.1f}")
        print(f"Tokens Used: {total_tokens}")
        print(f"{'='*70}\n")

    def _save_report(self, experiment_id: str):
        """
        Save run results to a CSV report.

        Args:
            experiment_id: Experiment ID for the report filename
        """
        if not self.results:
            return

        reports_dir = self.config.get_reports_dir()
        reports_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        filepath = reports_dir / f"{experiment_id}_{timestamp}.csv"

        with open(filepath, 'w', newline='', encoding='utf-8') as f:
            fieldnames = [
                'variation_id',
                'name',
                'outcome',
                'test_status',
                'iterations',
                'remaining_defects',
                'reason',
                'elapsed_s'
            ]
            writer = csv.DictWriter(f, fieldnames=fieldnames)

            writer.writeheader()
            for result in self.results:
                writer.writerow(report_row(result))

        print(f"Report saved to: {filepath}")


def report_row(result: RunResult) -> dict:
    """One CSV row for a run result."""
    return {
        'variation_id': result.variation.id,
        'name': result.variation.name,
        'outcome': result.outcome.value,
        'test_status': result.variation.test_status.value,
        'iterations': result.iterations,
        'remaining_defects': "; ".join(
            f"{d.severity.value}:{d.type}" for d in result.remaining_defects
        ),
        'reason': result.reason,
        'elapsed_s': f"{result.elapsed:.1f}"
    }


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Autonomous test-and-refine runner for A/B test variations",
        epilog="""
Examples:
  # Run every variation of an experiment
  variation-qa --experiment experiments/hero-cta.yaml

  # Quick refinement with a lower iteration ceiling
  variation-qa --experiment experiments/hero-cta.yaml --quick

  # Only the first two variations, verbose
  variation-qa --experiment experiments/hero-cta.yaml --limit 2 --verbose
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--experiment',
        type=str,
        required=True,
        help='Path to the experiment YAML file'
    )
    parser.add_argument(
        '--quick',
        action='store_true',
        help='Use the quick refinement iteration ceiling'
    )
    parser.add_argument(
        '--limit',
        type=int,
        default=None,
        help='Maximum number of variations to run (default: all)'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to config.yml (default: the packaged config.yml)'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output (debug logging, itemized issues)'
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        config = ConfigLoader(config_path=args.config)
        experiment = ExperimentLoader().load_file(args.experiment)

        runner = VariationRunner(config, verbose=args.verbose)
        asyncio.run(runner.run_experiment(experiment, quick=args.quick, limit=args.limit))

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(1)
    except Exception as e:
        print(f"ERROR: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
