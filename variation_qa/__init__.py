"""
Autonomous test-and-refine engine for A/B test variations.
"""

from .config_loader import ConfigLoader, get_config
from .experiment_loader import ExperimentLoader, Experiment
from .api_client import APIClient
from .harness import PageHarness, BrowserHarness, HarnessError
from .validator import TechnicalValidator, ValidationReport
from .judge import VisionJudge
from .generator import CodeGenerator
from .controller import IterationController, should_continue_iteration
from .models import (
    CancellationToken,
    Defect,
    QAResult,
    QAStatus,
    RunOutcome,
    RunResult,
    Severity,
    TestResult,
    TestStatus,
    Variation
)

__all__ = [
    'ConfigLoader',
    'get_config',
    'ExperimentLoader',
    'Experiment',
    'APIClient',
    'PageHarness',
    'BrowserHarness',
    'HarnessError',
    'TechnicalValidator',
    'ValidationReport',
    'VisionJudge',
    'CodeGenerator',
    'IterationController',
    'should_continue_iteration',
    'CancellationToken',
    'Defect',
    'QAResult',
    'QAStatus',
    'RunOutcome',
    'RunResult',
    'Severity',
    'TestResult',
    'TestStatus',
    'Variation'
]
