"""
Project structure: modules, features, their versions and published trees.

models      ORM rows (live nodes + immutable version rows)
hashing     canonical content hashing for snapshot dedup
ordering    dense sibling order shared by modules and features
versioning  snapshot / rollback / publish and published-tree resolution
lifecycle   soft delete, restore and reparenting over subtrees
tree        live tree materialization
service     validated, audited operations used by the API
admin       JSON blueprint mounted at /api
"""
