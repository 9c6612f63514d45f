"""Pipeline services: store, queue, worker, repair, replay and valuation."""
