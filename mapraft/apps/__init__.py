"""Sample map and reduce functions: word count, indexer, crash, early exit, job count and timing."""