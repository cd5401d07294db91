"""
Analysis data model shared by the correlator, the deduplicator and the CLI
exporter: detected issues, recommendations and parameter changes.

Issues come from external detectors as JSON; the JSON keys keep the
detector's camelCase names (issueId, recommendedChange, ...) and are mapped
onto snake_case attributes here.
"""

import json
import uuid

AXES = ("roll", "pitch", "yaw")
GLOBAL_AXIS = "global"

SEVERITY_RANK = {"high": 3, "medium": 2, "low": 1}

CROSS_AXIS_PATTERNS = ("allAxes", "rollPitchOnly", "yawOnly", "singleAxis", "asymmetric")


def generate_id():
    return uuid.uuid4().hex


class ModelError(ValueError):
    """Malformed issue or recommendation document."""


def _require(d, key, what):
    if key not in d:
        raise ModelError(f"{what} is missing '{key}'")
    return d[key]


def _number(d, key, default, kind, what):
    try:
        return kind(d.get(key, default))
    except (TypeError, ValueError):
        raise ModelError(f"{what} {d.get('id')!r} has non-numeric '{key}': {d.get(key)!r}") from None


# ─── Issues ──────────────────────────────────────────────────────────────────

class CrossAxisContext:
    def __init__(self, pattern, affected_axes, description):
        self.pattern = pattern
        self.affected_axes = list(affected_axes)
        self.description = description

    def __eq__(self, other):
        return (isinstance(other, CrossAxisContext) and self.pattern == other.pattern
                and self.affected_axes == other.affected_axes
                and self.description == other.description)

    def __repr__(self):
        return f"<CrossAxisContext {self.pattern} {self.affected_axes}>"

    def to_dict(self):
        return {"pattern": self.pattern, "affectedAxes": list(self.affected_axes),
                "description": self.description}

    @classmethod
    def from_dict(cls, d):
        return cls(d["pattern"], d.get("affectedAxes", []), d.get("description", ""))


class DetectedIssue:
    """One classified problem on one axis (or on the "global" pseudo-axis)."""

    def __init__(self, id, type, severity, axis, time_range=None, occurrences=None,
                 metrics=None, confidence=0.0, description="", cross_axis_context=None):
        self.id = id
        self.type = type
        self.severity = severity
        self.axis = axis
        self.time_range = tuple(time_range) if time_range else None
        self.occurrences = [tuple(o) for o in occurrences] if occurrences else None
        self.metrics = dict(metrics or {})
        self.confidence = confidence
        self.description = description
        self.cross_axis_context = cross_axis_context

    @property
    def severity_rank(self):
        return SEVERITY_RANK.get(self.severity, 0)

    def time_ranges(self):
        """Occurrence ranges, or the single time_range when none were recorded."""
        if self.occurrences:
            return list(self.occurrences)
        return [self.time_range] if self.time_range else []

    def copy(self, **changes):
        dup = DetectedIssue(self.id, self.type, self.severity, self.axis, self.time_range,
                            self.occurrences, self.metrics, self.confidence, self.description,
                            self.cross_axis_context)
        for key, value in changes.items():
            if not hasattr(dup, key):
                raise AttributeError(f"DetectedIssue has no attribute '{key}'")
            setattr(dup, key, value)
        return dup

    def __repr__(self):
        return f"<DetectedIssue {self.type} {self.axis} {self.severity} conf={self.confidence:.2f}>"

    def to_dict(self):
        d = {"id": self.id, "type": self.type, "severity": self.severity, "axis": self.axis,
             "metrics": dict(self.metrics), "confidence": self.confidence,
             "description": self.description}
        if self.time_range:
            d["timeRange"] = list(self.time_range)
        if self.occurrences:
            d["occurrences"] = [list(o) for o in self.occurrences]
        if self.cross_axis_context:
            d["crossAxisContext"] = self.cross_axis_context.to_dict()
        return d

    @classmethod
    def from_dict(cls, d):
        ctx = d.get("crossAxisContext")
        severity = _require(d, "severity", "issue")
        if severity not in SEVERITY_RANK:
            raise ModelError(f"issue {d.get('id')!r} has unknown severity {severity!r}")
        return cls(
            id=_require(d, "id", "issue"),
            type=_require(d, "type", "issue"),
            severity=severity,
            axis=_require(d, "axis", "issue"),
            time_range=d.get("timeRange"),
            occurrences=d.get("occurrences"),
            metrics=d.get("metrics"),
            confidence=_number(d, "confidence", 0.0, float, "issue"),
            description=d.get("description", ""),
            cross_axis_context=CrossAxisContext.from_dict(ctx) if ctx else None,
        )


# ─── Recommendations ─────────────────────────────────────────────────────────

class ParameterChange:
    def __init__(self, parameter, recommended_change, axis=None, current_value=None,
                 explanation=""):
        self.parameter = parameter
        self.recommended_change = recommended_change
        self.axis = axis
        self.current_value = current_value
        self.explanation = explanation

    @property
    def key(self):
        """Conflict-resolution key: parameter plus axis, "_global" when axis-less."""
        return f"{self.parameter}:{self.axis or '_global'}"

    def copy(self, **changes):
        dup = ParameterChange(self.parameter, self.recommended_change, self.axis,
                              self.current_value, self.explanation)
        for key, value in changes.items():
            if not hasattr(dup, key):
                raise AttributeError(f"ParameterChange has no attribute '{key}'")
            setattr(dup, key, value)
        return dup

    def same_change(self, other):
        return (self.parameter == other.parameter and self.axis == other.axis
                and self.recommended_change == other.recommended_change)

    def __eq__(self, other):
        return (isinstance(other, ParameterChange) and self.same_change(other)
                and self.current_value == other.current_value
                and self.explanation == other.explanation)

    def __repr__(self):
        axis = f"[{self.axis}]" if self.axis else ""
        return f"<ParameterChange {self.parameter}{axis} {self.recommended_change}>"

    def to_dict(self):
        d = {"parameter": self.parameter, "recommendedChange": self.recommended_change,
             "explanation": self.explanation}
        if self.axis:
            d["axis"] = self.axis
        if self.current_value is not None:
            d["currentValue"] = self.current_value
        return d

    @classmethod
    def from_dict(cls, d):
        return cls(
            parameter=_require(d, "parameter", "change"),
            recommended_change=str(_require(d, "recommendedChange", "change")),
            axis=d.get("axis"),
            current_value=d.get("currentValue"),
            explanation=d.get("explanation", ""),
        )


class Recommendation:
    """Suggested configuration change. No changes means a title-only (inspection) item."""

    def __init__(self, id, issue_id, title, priority=0, confidence=0.0, changes=None,
                 related_issue_ids=None, type=None, description="", rationale="",
                 risks=None, expected_improvement="", category=None, conflict_context=None):
        self.id = id
        self.issue_id = issue_id
        self.type = type
        self.priority = priority
        self.confidence = confidence
        self.title = title
        self.description = description
        self.rationale = rationale
        self.risks = list(risks or [])
        self.changes = list(changes or [])
        self.expected_improvement = expected_improvement
        self.related_issue_ids = list(related_issue_ids or [])
        self.category = category
        self.conflict_context = conflict_context

    @property
    def title_only(self):
        return not self.changes

    def copy(self, **changes):
        dup = Recommendation(
            self.id, self.issue_id, self.title, self.priority, self.confidence,
            [c.copy() for c in self.changes], self.related_issue_ids, self.type,
            self.description, self.rationale, self.risks, self.expected_improvement,
            self.category, self.conflict_context)
        for key, value in changes.items():
            if not hasattr(dup, key):
                raise AttributeError(f"Recommendation has no attribute '{key}'")
            setattr(dup, key, value)
        return dup

    def __repr__(self):
        return f"<Recommendation p{self.priority} {self.title!r} changes={len(self.changes)}>"

    def to_dict(self):
        d = {
            "id": self.id, "issueId": self.issue_id, "type": self.type,
            "priority": self.priority, "confidence": self.confidence,
            "title": self.title, "description": self.description,
            "rationale": self.rationale, "risks": list(self.risks),
            "changes": [c.to_dict() for c in self.changes],
            "expectedImprovement": self.expected_improvement,
            "relatedIssueIds": list(self.related_issue_ids),
        }
        if self.category:
            d["category"] = self.category
        if self.conflict_context:
            d["conflictContext"] = self.conflict_context
        return d

    @classmethod
    def from_dict(cls, d):
        return cls(
            id=d.get("id") or generate_id(),
            issue_id=_require(d, "issueId", "recommendation"),
            title=_require(d, "title", "recommendation"),
            priority=_number(d, "priority", 0, int, "recommendation"),
            confidence=_number(d, "confidence", 0.0, float, "recommendation"),
            changes=[ParameterChange.from_dict(c) for c in d.get("changes", [])],
            related_issue_ids=d.get("relatedIssueIds"),
            type=d.get("type"),
            description=d.get("description", ""),
            rationale=d.get("rationale", ""),
            risks=d.get("risks"),
            expected_improvement=d.get("expectedImprovement", ""),
            category=d.get("category"),
            conflict_context=d.get("conflictContext"),
        )


# ─── JSON files ──────────────────────────────────────────────────────────────

def _load_list(filepath, key):
    with open(filepath) as f:
        doc = json.load(f)
    if isinstance(doc, dict):
        doc = doc.get(key, [])
    if not isinstance(doc, list):
        raise ModelError(f"{filepath}: expected a list of {key}")
    return doc


def load_issues(filepath):
    """Issues from a JSON list, or from the "issues" key of a JSON object."""
    return [DetectedIssue.from_dict(d) for d in _load_list(filepath, "issues")]


def load_recommendations(filepath):
    return [Recommendation.from_dict(d) for d in _load_list(filepath, "recommendations")]
