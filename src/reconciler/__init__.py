"""Reconciliation engine for declarative infrastructure manifests.

Builds a dependency graph from a manifest, diffs it against recorded
state into an ordered plan, and applies the plan through provider
adapters with bounded concurrency.

Modules are imported directly (reconciler.graph, reconciler.planner, ...)
so that config and providers can depend on reconciler.errors without
import cycles.
"""
