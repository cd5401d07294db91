"""
Recommendation deduplication with per-parameter conflict resolution.

Every change is indexed by parameter and axis across all recommendations.
A parameter/axis touched by several recommendations is owned by the one
with the highest priority (then confidence). When they disagree on
direction the values are blended by a confidence-weighted average instead
of letting the owner's value win outright.
"""

import math

from bf_analysis_model import ParameterChange
from bf_cli_export import Absolute, Percentage, parameter_label, parse_change

# Net blended change below this magnitude counts as "cancels out"
MERGE_CANCEL_THRESHOLD = 0.01

MERGED_DESCRIPTION = "Balanced adjustment based on multiple recommendations."
MERGED_CONFLICT_NOTE = ("This value was merged from conflicting recommendations "
                        "that disagreed on direction.")


def parse_change_direction(text):
    """(sign, magnitude) of a change string, None if unparseable.

    sign is +1/-1 for percentage and relative changes and 0 for absolute
    values. Percentages are returned as fractions ("+5%" → (1, 0.05)).
    """
    change = parse_change(text)
    if change is None:
        return None
    if isinstance(change, Absolute):
        return 0, change.amount
    if isinstance(change, Percentage):
        return change.sign, change.amount / 100
    return change.sign, change.amount


def _fixed(x, digits):
    # Half-up, as the exported strings have always been formatted
    scale = 10 ** digits
    return f"{math.floor(x * scale + 0.5) / scale:.{digits}f}"


class _Entry:
    __slots__ = ("change", "rec_index", "direction")

    def __init__(self, change, rec_index):
        self.change = change
        self.rec_index = rec_index
        self.direction = parse_change_direction(change.recommended_change)


def weighted_merge_change(entries, recommendations, threshold=MERGE_CANCEL_THRESHOLD):
    """Blend conflicting changes on one parameter/axis, None if they cancel out."""
    directional = [e for e in entries if e.direction is not None and e.direction[0] != 0]
    if not directional:
        return entries[0].change if entries else None

    numerator = 0.0
    denominator = 0.0
    for e in directional:
        confidence = recommendations[e.rec_index].confidence
        sign, magnitude = e.direction
        numerator += sign * magnitude * confidence
        denominator += confidence

    if denominator == 0:
        return None
    net = numerator / denominator
    if abs(net) < threshold:
        return None

    sign = "+" if net > 0 else "-"
    mag = abs(net)
    if any("%" in e.change.recommended_change for e in directional):
        text = f"{sign}{_fixed(mag * 100, 0)}%"
    else:
        text = f"{sign}{_fixed(mag, 2)}"

    representative = directional[0].change
    return ParameterChange(
        parameter=representative.parameter,
        axis=representative.axis,
        current_value=representative.current_value,
        recommended_change=text,
        explanation=f"Balanced from {len(directional)} recommendations",
    )


def _pick_winner(entries, recommendations):
    best = entries[0].rec_index
    for e in entries[1:]:
        cur, top = recommendations[e.rec_index], recommendations[best]
        if cur.priority > top.priority or (cur.priority == top.priority
                                           and cur.confidence > top.confidence):
            best = e.rec_index
    return best


def _absorb(bucket, losing_rec):
    bucket.append(losing_rec.issue_id)
    bucket.extend(losing_rec.related_issue_ids)


def _related_ids(rec, extra):
    ids = []
    for issue_id in list(rec.related_issue_ids) + list(extra):
        if issue_id != rec.issue_id and issue_id not in ids:
            ids.append(issue_id)
    return ids


def deduplicate_recommendations(recommendations, threshold=MERGE_CANCEL_THRESHOLD):
    """Deduplicated copy of a recommendation list; the input is left untouched.

    Title-only recommendations collapse by exact title into the first one
    seen. Change-bearing recommendations keep only the changes they own
    after conflict resolution and are dropped when they own none.
    """
    if not recommendations:
        return []

    # Index every change by parameter/axis
    by_key = {}
    for i, rec in enumerate(recommendations):
        for change in rec.changes:
            by_key.setdefault(change.key, []).append(_Entry(change, i))

    resolved = {}
    absorbed = {}
    for entries in by_key.values():
        if len(entries) == 1:
            resolved.setdefault(entries[0].rec_index, []).append(entries[0].change)
            continue

        winner = _pick_winner(entries, recommendations)
        signs = {e.direction[0] for e in entries if e.direction is not None}
        if 1 in signs and -1 in signs:
            merged = weighted_merge_change(entries, recommendations, threshold)
            if merged is not None:
                resolved.setdefault(winner, []).append(merged)
        else:
            owned = next(e for e in entries if e.rec_index == winner)
            resolved.setdefault(winner, []).append(owned.change)

        for e in entries:
            if e.rec_index != winner:
                _absorb(absorbed.setdefault(winner, []), recommendations[e.rec_index])

    # Title-only recommendations: first of each title absorbs the rest
    title_owner = {}
    for i, rec in enumerate(recommendations):
        if rec.changes:
            continue
        if rec.title in title_owner:
            _absorb(absorbed.setdefault(title_owner[rec.title], []), rec)
        else:
            title_owner[rec.title] = i

    result = []
    for i, rec in enumerate(recommendations):
        if not rec.changes:
            if title_owner.get(rec.title) == i:
                result.append(rec.copy(related_issue_ids=_related_ids(rec, absorbed.get(i, []))))
            continue

        changes = resolved.get(i)
        if not changes:
            continue

        modified = any(not any(orig.same_change(c) for orig in rec.changes) for c in changes)
        out = rec.copy(
            changes=[c.copy() for c in changes],
            related_issue_ids=_related_ids(rec, absorbed.get(i, [])),
            conflict_context=None,
        )
        if modified:
            names = [parameter_label(c.parameter) + (f" on {c.axis}" if c.axis else "")
                     for c in changes]
            out.title = f"Adjust {', '.join(names)}"
            out.description = MERGED_DESCRIPTION
            out.conflict_context = MERGED_CONFLICT_NOTE
        result.append(out)

    return result
