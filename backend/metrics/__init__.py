# Metric handlers: one shared status table, one module per metric family.
