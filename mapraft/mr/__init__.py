"""MapReduce coordinator, worker, and the socket transport between them."""