"""Alert system module."""
from alerts.conditions import ConditionEvaluator
from alerts.rules_manager import RulesManager
from alerts.lifecycle import AlertLifecycleManager
from alerts.dispatcher import NotificationDispatcher, RetryPolicy
from alerts.channels import ConsoleChannel, FileChannel, WebhookChannel, build_channels
