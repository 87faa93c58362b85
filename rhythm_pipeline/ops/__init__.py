from rhythm_pipeline.ops.rule_consistency import check_rule_consistency

__all__ = [
    "check_rule_consistency",
]
