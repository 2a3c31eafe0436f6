""" Pure calculators of the billing core.

    Engines never touch the database: they take frozen snapshots
    hydrated by the models/services and return new values. """
