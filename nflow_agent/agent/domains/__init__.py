"""Domain sub-workflows, each paired with the SubgraphHandler that bridges it to the coordinator."""
