# mdsha core: configuration, errors, logging, metrics
