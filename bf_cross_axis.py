"""
Cross-axis correlation of detected issues.

Issues are grouped by type; the set of axes a type shows up on is classified
into a pattern. Patterns that per-axis tuning cannot explain (all three axes,
or an uneven pair) add one hardware-inspection recommendation per type.
"""

from bf_analysis_model import AXES, CrossAxisContext, Recommendation, generate_id

# Craft-wide issue types, reported once rather than per axis
GLOBAL_ISSUE_TYPES = frozenset({
    "cgOffset", "motorImbalance", "escDesync", "voltageSag", "motorSaturation",
    "thermalDegradation", "mechanicalEvent",
})

ISSUE_LABELS = {
    "bounceback": "Bounceback",
    "propwash": "Propwash",
    "midThrottleWobble": "Mid-throttle wobble",
    "highFrequencyNoise": "High-frequency noise",
    "lowFrequencyOscillation": "Low-frequency oscillation",
    "gyroNoise": "Gyro noise",
    "dtermNoise": "D-term noise",
    "feedforwardNoise": "Feedforward noise",
    "highThrottleOscillation": "High-throttle oscillation",
    "underdamped": "Underdamped tracking",
    "overdamped": "Overdamped tracking",
    "overFiltering": "Over-filtering",
    "bearingNoise": "Bearing noise",
    "frameResonance": "Frame resonance",
    "electricalNoise": "Electrical noise",
    "filterMismatch": "Filter mismatch",
}


def format_issue_type(issue_type):
    return ISSUE_LABELS.get(issue_type, issue_type)


def is_global_issue(issue):
    return issue.type in GLOBAL_ISSUE_TYPES or issue.axis not in AXES


# ─── Pattern Classification ──────────────────────────────────────────────────

def order_axes_by_severity(issues):
    """Distinct axes, most severe first; equal severity keeps roll/pitch/yaw order."""
    worst = {}
    for issue in issues:
        worst[issue.axis] = max(worst.get(issue.axis, 0), issue.severity_rank)
    return sorted(worst, key=lambda axis: (-worst[axis], AXES.index(axis)))


def classify_pattern(affected_axes):
    present = set(affected_axes)
    count = len(present)

    if count == 3:
        return CrossAxisContext(
            "allAxes", affected_axes,
            "Same issue on all three axes - likely a frame-wide or global configuration problem")
    if present == {"roll", "pitch"}:
        return CrossAxisContext(
            "rollPitchOnly", affected_axes,
            "Affects roll and pitch equally - likely a systematic issue (vibration, filtering, PID balance)")
    if present == {"yaw"}:
        return CrossAxisContext(
            "yawOnly", affected_axes,
            "Only affects yaw - likely yaw-specific (motor timing, prop torque, yaw PID)")
    if count == 1:
        return CrossAxisContext(
            "singleAxis", affected_axes,
            f"Only affects {affected_axes[0]} - check for physical asymmetry or axis-specific PID issues")
    # roll+yaw or pitch+yaw
    return CrossAxisContext(
        "asymmetric", affected_axes,
        f"Asymmetric pattern ({', '.join(affected_axes)}) - check for physical damage or weight imbalance")


# ─── Recommendation Synthesis ────────────────────────────────────────────────

def _anchor(issues):
    best = issues[0]
    for issue in issues[1:]:
        if issue.severity_rank > best.severity_rank:
            best = issue
    return best


def cross_axis_recommendation(issue_type, issues, context):
    """Hardware-check recommendation for allAxes/asymmetric patterns, else None."""
    if context.pattern not in ("allAxes", "asymmetric"):
        return None

    anchor = _anchor(issues)
    label = format_issue_type(issue_type)

    if context.pattern == "allAxes":
        return Recommendation(
            id=generate_id(),
            issue_id=anchor.id,
            type="hardwareCheck",
            priority=5,
            confidence=min(0.85, anchor.confidence * 0.9),
            category="hardware",
            title=f"{label} detected on all axes",
            description=context.description,
            rationale=("When the same issue appears on all three axes simultaneously, it usually "
                       "points to a frame-wide cause: vibration, loose hardware, or a global "
                       "configuration problem rather than an axis-specific tune issue."),
            risks=["May require physical inspection", "Could be normal for certain frame types"],
            changes=[],
            expected_improvement="Identifying the root cause can resolve the issue across all axes at once",
        )

    return Recommendation(
        id=generate_id(),
        issue_id=anchor.id,
        type="hardwareCheck",
        priority=4,
        confidence=min(0.75, anchor.confidence * 0.8),
        category="hardware",
        title=f"Asymmetric {label} pattern",
        description=context.description,
        rationale=("An asymmetric pattern - where one axis is affected but its counterpart is "
                   "not - often indicates physical asymmetry: a bent prop, damaged motor, loose "
                   "arm, or uneven weight distribution."),
        risks=["Requires physical inspection", "May be normal for asymmetric builds"],
        changes=[],
        expected_improvement="Fixing the mechanical issue eliminates the root cause",
    )


# ─── Correlation ─────────────────────────────────────────────────────────────

def correlate_axes(issues):
    """Annotate issues with their cross-axis pattern.

    Returns (annotated_issues, cross_axis_recommendations). Input issues are
    not modified; annotated issues are copies, grouped by type in order of
    first appearance. Global issues pass through without a context.
    """
    by_type = {}
    for issue in issues:
        by_type.setdefault(issue.type, []).append(issue)

    annotated = []
    recommendations = []
    for issue_type, group in by_type.items():
        scoped = [i for i in group if not is_global_issue(i)]
        if not scoped:
            annotated.extend(i.copy() for i in group)
            continue

        context = classify_pattern(order_axes_by_severity(scoped))
        for issue in group:
            if is_global_issue(issue):
                annotated.append(issue.copy())
            else:
                annotated.append(issue.copy(cross_axis_context=CrossAxisContext(
                    context.pattern, context.affected_axes, context.description)))

        rec = cross_axis_recommendation(issue_type, scoped, context)
        if rec is not None:
            recommendations.append(rec)

    return annotated, recommendations
