"""Resource manager and device interfaces, with the null and fallback managers."""