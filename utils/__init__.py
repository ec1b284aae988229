"""Fee configuration, payment ledger and storage for the school fee tracker."""
