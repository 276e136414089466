"""
Envoy Gateway management.

Recipes describing the managed objects and the manager driving their
lifecycle on the platform and target clusters.
"""
