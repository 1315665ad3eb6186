"""Pure domain layer: types, state machine rules and calculators.  Zero I/O."""
