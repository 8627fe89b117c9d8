"""
Print Framing Pipeline

Four checkpointed steps per image:
1. mark-processing - pending -> processing
2. analyze-color - vision model adjustments (neutral on failure)
3. upscale - optional enhancement (skipped on failure)
4. compose-and-persist - frame, store and mark completed
"""
