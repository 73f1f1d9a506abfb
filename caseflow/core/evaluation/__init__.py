from caseflow.core.evaluation.base import Evaluator
from caseflow.core.evaluation.scriptlets import ScriptletEvaluator, lookup

__all__ = ['Evaluator', 'ScriptletEvaluator', 'lookup']
