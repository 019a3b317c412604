"""PCI configuration parsing and vGPU detection."""