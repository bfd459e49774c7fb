type WorkerOperationID = int
