"""
Admin automation rules: count-based conditions over tables and a small set
of actions (email, status update, supplier assignment).
"""

from typing import Any, Dict, List, Optional
import structlog
from .errors import ApiError
from .models import AutomationRule, BATCH_STATUSES
from .supabase_repo import SupabaseAPIError
from .workflow import validate_status

logger = structlog.get_logger()

# Tables an update_status action may touch, and the column it writes
STATUS_COLUMNS = {
    'orders': 'workflow_status',
    'supplier_orders': 'status',
    'production_batches': 'batch_status',
    'ai_quotes': 'status',
}

def _count_bound(condition: Dict[str, Any], key: str) -> Optional[int]:
    value = condition.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Condition '{key}' must be an integer")
    return value

class AutomationRunner:
    """Evaluates active automation rules and runs their actions."""

    def __init__(self, repo, workflow, mailer=None):
        self.repo = repo
        self.workflow = workflow
        self.mailer = mailer

    def conditions_met(self, conditions: Any) -> bool:
        """
        Evaluate rule conditions.

        Empty conditions always hold. Otherwise every entry of the form
        {"table": ..., "where": {...}, "min_count": n, "max_count": m}
        must match: the number of rows in `table` matching `where` is at
        least min_count and at most max_count (either bound optional).
        """
        if not conditions:
            return True
        if isinstance(conditions, dict):
            conditions = [conditions]
        if not isinstance(conditions, list):
            raise ValueError("Conditions must be an object or a list of objects")

        for condition in conditions:
            if not isinstance(condition, dict):
                raise ValueError(f"Invalid condition: {condition!r}")
            table = condition.get('table')
            if not table or not isinstance(table, str):
                raise ValueError("Condition is missing 'table'")
            where = condition.get('where') or {}
            if not isinstance(where, dict):
                raise ValueError("Condition 'where' must be an object")
            min_count = _count_bound(condition, 'min_count')
            max_count = _count_bound(condition, 'max_count')

            matched = self.repo.count(table, where)
            if min_count is not None and matched < min_count:
                return False
            if max_count is not None and matched > max_count:
                return False
        return True

    def run_action(self, action: Dict[str, Any], admin_id: Optional[str] = None) -> Dict[str, Any]:
        action_type = action.get('type') if isinstance(action, dict) else None
        try:
            if not isinstance(action, dict):
                raise ValueError(f"Invalid action: {action!r}")
            params = action.get('params') or {}
            if not isinstance(params, dict):
                raise ValueError("Action 'params' must be an object")
            if action_type == 'send_email':
                return self._send_email(params)
            if action_type == 'update_status':
                return self._update_status(params)
            if action_type == 'assign_supplier':
                return self._assign_supplier(params, admin_id)
            logger.warning(f"Unknown automation action type: {action_type}")
            return {"action": action_type, "success": False, "error": f"Unknown action type: {action_type}"}
        except (ApiError, SupabaseAPIError, ValueError) as e:
            logger.error(f"Automation action {action_type} failed: {e}")
            return {"action": action_type, "success": False, "error": getattr(e, 'message', str(e))}

    def _send_email(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.mailer is None:
            return {"action": 'send_email', "success": False, "error": "Email is not configured"}
        if not params.get('to') or not params.get('subject'):
            raise ValueError("send_email requires 'to' and 'subject'")
        ok, detail = self.mailer.send(params['to'], params['subject'], params.get('html') or "")
        result = {"action": 'send_email', "success": ok}
        if ok:
            result["email_id"] = detail
        else:
            result["error"] = detail
        return result

    def _update_status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        table = params.get('table')
        record_id = params.get('id')
        new_status = params.get('new_status')
        if table not in STATUS_COLUMNS:
            raise ValueError(f"update_status is not allowed on table: {table}")
        if not record_id or not new_status:
            raise ValueError("update_status requires 'id' and 'new_status'")
        if table == 'orders':
            validate_status(new_status)
        elif table == 'production_batches' and new_status not in BATCH_STATUSES:
            raise ValueError(f"Invalid batch status: {new_status}")

        updated = self.repo.update(table, {STATUS_COLUMNS[table]: new_status}, {"id": record_id})
        return {"action": 'update_status', "success": bool(updated), "updated": len(updated)}

    def _assign_supplier(self, params: Dict[str, Any], admin_id: Optional[str]) -> Dict[str, Any]:
        _, supplier_order = self.workflow.assign_supplier(
            params.get('order_id'),
            params.get('supplier_id'),
            params.get('supplier_price'),
            assigned_by=admin_id,
        )
        return {"action": 'assign_supplier', "success": True, "supplier_order_id": supplier_order.id}

    def execute_rule(self, rule: AutomationRule, admin_id: Optional[str] = None) -> Dict[str, Any]:
        if rule.actions is not None and not isinstance(rule.actions, list):
            raise ValueError("Rule actions must be a list")
        if not self.conditions_met(rule.conditions):
            return {
                "rule_id": rule.id,
                "rule_name": rule.rule_name,
                "executed": False,
                "reason": 'Conditions not met',
            }

        action_results = [self.run_action(action, admin_id) for action in rule.actions or []]
        self.repo.log_admin_action(
            'automation_rule_executed', 'automation_rule', rule.id,
            {"rule_name": rule.rule_name, "actions": action_results},
            admin_id=admin_id,
        )
        return {
            "rule_id": rule.id,
            "rule_name": rule.rule_name,
            "executed": True,
            "actions": action_results,
        }

    def execute_all(self, admin_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Run every active rule, highest priority first."""
        rules = self.repo.list_active_automation_rules()
        logger.info(f"Found {len(rules)} active automation rules")

        results = []
        for rule in rules:
            try:
                results.append(self.execute_rule(rule, admin_id))
            except (SupabaseAPIError, ValueError) as e:
                logger.error(f"Error executing rule {rule.rule_name}: {e}")
                results.append({
                    "rule_id": rule.id,
                    "rule_name": rule.rule_name,
                    "executed": False,
                    "error": str(e),
                })
        return results
