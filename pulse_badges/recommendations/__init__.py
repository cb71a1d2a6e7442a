"""
Recommendation layer: turns instrument snapshots into a ranked top-N.

Modules
-------
omit_rules : apply_omit_rules() — per-market min/max gating on raw fields.
scorer     : score_all() — formula score per snapshot, never raises.
ranker     : select_recommended() + top_symbols() + is_ascending_growth().
reporter   : write_top_csv() + write_refresh_json() — file output.
"""
